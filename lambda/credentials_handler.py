import json
import os
import time
from datetime import datetime, timezone
from typing import Any

from broker_errors import BrokerError, error_body
from broker_policy import BrokerConfig, group_claims, load_config, resolve_group
from credential_codec import IssuedCredential, mint_credential
from identity_token import GROUPS_CLAIM, bearer_token, verify_identity_token

SCHEMA_VERSION = os.environ.get("SCHEMA_VERSION", "2026-10-01")
CREDENTIALS_KIND = "group-broker.credentials.v1"

_config: BrokerConfig | None = None


def _broker_config() -> BrokerConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def _response(status_code: int, body: dict[str, Any]) -> dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"content-type": "application/json", "cache-control": "no-store"},
        "body": json.dumps(body),
    }


def _get_request_id(event: dict[str, Any]) -> str:
    return str((event.get("requestContext") or {}).get("requestId") or "")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def _credentials_body(cred: IssuedCredential, *, request_id: str, username: str) -> dict[str, Any]:
    return {
        "kind": CREDENTIALS_KIND,
        "schemaVersion": SCHEMA_VERSION,
        "requestId": request_id,
        "principal": {"sub": cred.subject, "username": username},
        "role": cred.role,
        "credentials": {
            "credentialId": cred.credential_id,
            "sessionToken": cred.session_token,
            "expiration": _iso(cred.expires_at),
        },
        "grants": [op.as_dict() for op in cred.grants],
        "issuedAt": _iso(cred.issued_at),
        "expiresAt": _iso(cred.expires_at),
        "configVersion": cred.config_version,
    }


def issue_for_token(token: str) -> tuple[IssuedCredential, dict[str, Any], str]:
    """
    Exchange a verified identity token for a role-scoped credential.

    Returns (credential, claims, group name at issuance). Raises a BrokerError
    subclass on any failure; there is no fallback role.
    """

    config = _broker_config()
    claims = verify_identity_token(token)
    group = resolve_group(config, group_claims(claims.get(GROUPS_CLAIM)))
    cred = mint_credential(
        subject=str(claims["sub"]),
        role=group.role,
        config_version=config.version,
    )
    return cred, claims, group.name


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    start = time.time()
    request_id = _get_request_id(event)

    wide_event: dict[str, Any] = {
        "event": "group_broker_issue_credentials",
        "schema_version": SCHEMA_VERSION,
        "request_id": request_id,
        "ts": _now_iso(),
    }

    status_code = 500
    body: dict[str, Any] = {}

    try:
        token = bearer_token(event.get("headers"))
        cred, claims, group_name = issue_for_token(token)
        wide_event["config_version"] = cred.config_version
        username = str(claims.get("cognito:username") or "")

        # Audit trail: who, which group at issuance, which role, when.
        wide_event["principal"] = {"sub": cred.subject, "username": username, "issuer": claims.get("iss")}
        wide_event["group"] = group_name
        wide_event["role"] = cred.role
        wide_event["credential_id"] = cred.credential_id
        wide_event["issued_at"] = _iso(cred.issued_at)
        wide_event["expires_at"] = _iso(cred.expires_at)

        status_code = 200
        body = _credentials_body(cred, request_id=request_id, username=username)
        wide_event["outcome"] = "success"
        return _response(status_code, body)
    except BrokerError as exc:
        status_code = exc.status_code
        body = error_body(exc, request_id=request_id)
        if status_code >= 500:
            body["message"] = "Server misconfigured"
        wide_event["outcome"] = exc.outcome
        wide_event["error"] = {"type": type(exc).__name__, "message": str(exc)}
        return _response(status_code, body)
    except Exception as exc:
        status_code = 500
        body = {
            "errorCode": "ISSUE_FAILED",
            "message": "Failed to issue scoped credentials",
            "requestId": request_id,
        }
        wide_event["outcome"] = "error"
        wide_event["error"] = {"type": type(exc).__name__, "message": str(exc)}
        return _response(status_code, body)
    finally:
        wide_event["status_code"] = status_code
        wide_event["duration_ms"] = int((time.time() - start) * 1000)
        # Never log credential material or identity tokens.
        print(json.dumps(wide_event, separators=(",", ":"), sort_keys=True))
