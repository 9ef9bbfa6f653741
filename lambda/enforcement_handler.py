"""
Policy enforcement point in front of the business handlers.

Per call: Received -> Credential-Validated -> Policy-Checked -> Forwarded | Denied.
Nothing is kept between calls; every decision comes from the presented
credential and the enforcement-time clock.
"""

import json
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable

import business_handlers
from broker_errors import AuthorizationDenied, BrokerError, error_body
from broker_policy import BrokerConfig, Operation, load_config
from credential_codec import PresentedCredential, decode_credential
from identity_token import bearer_token

SCHEMA_VERSION = os.environ.get("SCHEMA_VERSION", "2026-10-01")

_config: BrokerConfig | None = None


def _response(status_code: int, body: dict[str, Any]) -> dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"content-type": "application/json", "cache-control": "no-store"},
        "body": json.dumps(body),
    }


def _broker_config() -> BrokerConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def _denied(status_code: int, body: dict[str, Any]) -> dict[str, Any]:
    # Every refusal carries the decision; allowed calls return the business response as is.
    return _response(status_code, {"allowed": False, **body})


def _get_request_id(event: dict[str, Any]) -> str:
    return str((event.get("requestContext") or {}).get("requestId") or "")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _operation(event: dict[str, Any]) -> Operation:
    # `resource` is the declared API resource; `path` is what the client sent.
    verb = str(event.get("httpMethod") or "").strip()
    resource = str(event.get("resource") or event.get("path") or "").strip()
    return Operation(verb=verb, resource=resource)


def authorize(token: str, op: Operation, *, now: datetime | None = None) -> PresentedCredential:
    cred = decode_credential(token, now=now)
    # Exact membership only: no prefixes, wildcards or case folding.
    if not cred.allows(op):
        raise AuthorizationDenied(f"Role {cred.role} may not {op.verb} {op.resource}")
    return cred


def enforce(
    token: str,
    verb: str,
    resource: str,
    forward: Callable[[Operation], Any],
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    op = Operation(verb=verb, resource=resource)
    try:
        cred = authorize(token, op, now=now)
    except BrokerError as exc:
        return {"allowed": False, "errorCode": exc.error_code, "outcome": exc.outcome}
    return {"allowed": True, "role": cred.role, "result": forward(op)}


def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    start = time.time()
    request_id = _get_request_id(event)
    op = _operation(event)

    wide_event: dict[str, Any] = {
        "event": "group_broker_enforce",
        "schema_version": SCHEMA_VERSION,
        "request_id": request_id,
        "ts": _now_iso(),
        "operation": op.as_dict(),
        "stage": "received",
    }

    status_code = 500

    try:
        try:
            config = _broker_config()
            wide_event["config_version"] = config.version
            cred = decode_credential(bearer_token(event.get("headers")))
        except BrokerError as exc:
            status_code = exc.status_code
            wide_event["outcome"] = exc.outcome
            wide_event["error"] = {"type": type(exc).__name__, "message": str(exc)}
            body = error_body(exc, request_id=request_id)
            if status_code >= 500:
                body["message"] = "Server misconfigured"
            return _denied(status_code, body)
        wide_event["stage"] = "credential_validated"
        wide_event["principal"] = {"sub": cred.subject}
        wide_event["role"] = cred.role
        wide_event["credential_id"] = cred.credential_id

        if not cred.allows(op):
            exc = AuthorizationDenied(f"Role {cred.role} may not {op.verb} {op.resource}")
            status_code = exc.status_code
            wide_event["stage"] = "denied"
            wide_event["outcome"] = exc.outcome
            return _denied(status_code, error_body(exc, request_id=request_id))
        wide_event["stage"] = "policy_checked"

        target = business_handlers.HANDLERS.get(config.handler_for(op) or "")
        if target is None:
            status_code = 404
            wide_event["outcome"] = "no_handler"
            return _denied(
                status_code,
                {
                    "errorCode": "NOT_FOUND",
                    "message": f"No handler for {op.verb} {op.resource}",
                    "requestId": request_id,
                },
            )

        result = target(event, context)
        status_code = int(result.get("statusCode") or 200)
        wide_event["stage"] = "forwarded"
        wide_event["outcome"] = "allowed"
        return result
    except Exception as exc:
        status_code = 500
        wide_event["outcome"] = "error"
        wide_event["error"] = {"type": type(exc).__name__, "message": str(exc)}
        return _denied(
            status_code,
            {
                "errorCode": "ENFORCEMENT_FAILED",
                "message": "Internal error",
                "requestId": request_id,
            },
        )
    finally:
        wide_event["status_code"] = status_code
        wide_event["duration_ms"] = int((time.time() - start) * 1000)
        print(json.dumps(wide_event, separators=(",", ":"), sort_keys=True))
