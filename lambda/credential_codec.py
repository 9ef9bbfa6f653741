"""
Broker credential format.

A credential is a (credentialId, sessionToken) pair. The session token is an
HS256 JWT signed with the broker key and carries the role name, the role's
allow set and the expiry, so enforcement needs no lookup. The group claim of
the identity token is deliberately not copied into it.
"""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import boto3
import jwt

from broker_errors import ConfigurationError, CredentialExpired, InvalidCredential
from broker_policy import Operation, Role

CREDENTIAL_ISSUER = os.environ.get("CREDENTIAL_ISSUER", "group-broker")
CREDENTIAL_SIGNING_KEY = os.environ.get("CREDENTIAL_SIGNING_KEY", "")
CREDENTIAL_SIGNING_KEY_SSM_PARAMETER = os.environ.get("CREDENTIAL_SIGNING_KEY_SSM_PARAMETER", "")
CREDENTIAL_TTL_SECONDS = int(os.environ.get("CREDENTIAL_TTL_SECONDS", "3600"))
MAX_TTL_SECONDS = int(os.environ.get("MAX_TTL_SECONDS", "3600"))
TOKEN_TYPE = "group-broker.session.v1"
_ALGORITHM = "HS256"
_MIN_KEY_BYTES = 32

_ssm_client = None
_signing_key_cache: str | None = None


@dataclass(frozen=True)
class IssuedCredential:
    credential_id: str
    session_token: str
    subject: str
    role: str
    grants: tuple[Operation, ...]
    issued_at: datetime
    expires_at: datetime
    config_version: str


@dataclass(frozen=True)
class PresentedCredential:
    credential_id: str
    subject: str
    role: str
    allow: frozenset[Operation]
    issued_at: datetime
    expires_at: datetime

    def allows(self, op: Operation) -> bool:
        return op in self.allow


def _aws_region() -> str | None:
    return os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION")


def _ssm():
    global _ssm_client
    if _ssm_client is None:
        _ssm_client = boto3.client("ssm", region_name=_aws_region())
    return _ssm_client


def signing_key() -> str:
    global _signing_key_cache
    if _signing_key_cache:
        return _signing_key_cache
    key = CREDENTIAL_SIGNING_KEY
    if not key and CREDENTIAL_SIGNING_KEY_SSM_PARAMETER:
        out = _ssm().get_parameter(Name=CREDENTIAL_SIGNING_KEY_SSM_PARAMETER, WithDecryption=True)
        key = str(out.get("Parameter", {}).get("Value", "")).strip()
    if len(key.encode("utf-8")) < _MIN_KEY_BYTES:
        raise ConfigurationError("Credential signing key missing or too short")
    _signing_key_cache = key
    return key


def ttl_seconds() -> int:
    return min(max(CREDENTIAL_TTL_SECONDS, 60), max(MAX_TTL_SECONDS, 60))


def mint_credential(
    *,
    subject: str,
    role: Role,
    config_version: str,
    now: datetime | None = None,
) -> IssuedCredential:
    issued_at = (now or datetime.now(timezone.utc)).replace(microsecond=0)
    expires_at = issued_at + timedelta(seconds=ttl_seconds())
    credential_id = uuid.uuid4().hex
    grants = tuple(sorted(role.allow))
    claims = {
        "iss": CREDENTIAL_ISSUER,
        "sub": subject,
        "jti": credential_id,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
        "typ": TOKEN_TYPE,
        "role": role.name,
        "allow": [[op.verb, op.resource] for op in grants],
        "cfg": config_version,
    }
    token = jwt.encode(claims, signing_key(), algorithm=_ALGORITHM)
    return IssuedCredential(
        credential_id=credential_id,
        session_token=token,
        subject=subject,
        role=role.name,
        grants=grants,
        issued_at=issued_at,
        expires_at=expires_at,
        config_version=config_version,
    )


def _parse_allow(raw: Any) -> frozenset[Operation]:
    if not isinstance(raw, list):
        raise InvalidCredential("Credential has no policy")
    out: set[Operation] = set()
    for item in raw:
        if (
            not isinstance(item, list)
            or len(item) != 2
            or not all(isinstance(part, str) and part for part in item)
        ):
            raise InvalidCredential("Credential policy is malformed")
        out.add(Operation(verb=item[0], resource=item[1]))
    return frozenset(out)


def decode_credential(token: str, *, now: datetime | None = None) -> PresentedCredential:
    if not token:
        raise InvalidCredential("Missing credential")
    check_at = now or datetime.now(timezone.utc)
    try:
        claims = jwt.decode(
            token,
            signing_key(),
            algorithms=[_ALGORITHM],
            issuer=CREDENTIAL_ISSUER,
            # Expiry is compared below against the enforcement-time clock.
            options={"require": ["exp", "iat", "sub", "jti"], "verify_exp": False},
        )
    except jwt.InvalidTokenError as e:
        raise InvalidCredential(f"Malformed credential: {e}") from None

    if claims.get("typ") != TOKEN_TYPE:
        raise InvalidCredential("Not a broker session token")
    try:
        issued_at = datetime.fromtimestamp(int(claims["iat"]), tz=timezone.utc)
        expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        raise InvalidCredential("Credential timestamps are malformed") from None
    if expires_at <= check_at:
        raise CredentialExpired("Credential expired")
    role = str(claims.get("role") or "").strip()
    if not role:
        raise InvalidCredential("Credential has no role")
    return PresentedCredential(
        credential_id=str(claims["jti"]),
        subject=str(claims["sub"]),
        role=role,
        allow=_parse_allow(claims.get("allow")),
        issued_at=issued_at,
        expires_at=expires_at,
    )
