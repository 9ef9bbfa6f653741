from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence


class AuthInputError(ValueError):
    """Raised when CLI auth inputs are missing or conflicting."""


class MissingEndpointError(AuthInputError):
    """Raised when an endpoint is required but missing."""


class InvalidTokenShapeError(AuthInputError):
    """Raised when a supplied token is not in JWT shape."""


@dataclass(frozen=True)
class BasicCredentials:
    username: str
    password: str


@dataclass(frozen=True)
class BearerRequestAuth:
    endpoint: str
    token: str


def _require_non_empty(val: str | None, *, name: str, hint: str) -> str:
    out = (val or "").strip()
    if not out:
        raise AuthInputError(f"missing {name} ({hint})")
    return out


def resolve_basic_credentials(
    *,
    username: str | None,
    password: str | None,
    env_or_none: Callable[..., str | None],
    username_env_names: Sequence[str] = ("BROKER_COGNITO_USERNAME",),
    password_env_names: Sequence[str] = ("BROKER_COGNITO_PASSWORD",),
) -> BasicCredentials:
    username_hint_env = str(username_env_names[0]).strip() if username_env_names else "BROKER_COGNITO_USERNAME"
    password_hint_env = str(password_env_names[0]).strip() if password_env_names else "BROKER_COGNITO_PASSWORD"
    resolved_username = _require_non_empty(
        username or env_or_none(*username_env_names),
        name="username",
        hint=f"--username or env {username_hint_env}",
    )
    resolved_password = _require_non_empty(
        password or env_or_none(*password_env_names),
        name="password",
        hint=f"--password or env {password_hint_env}",
    )
    return BasicCredentials(username=resolved_username, password=resolved_password)


def resolve_bearer_request(
    *,
    endpoint: str | None,
    endpoint_env_names: Sequence[str],
    token: str | None,
    token_env_names: Sequence[str],
    token_name: str,
    env_or_none: Callable[..., str | None],
) -> BearerRequestAuth:
    """Resolve an endpoint and a JWT-shaped bearer token from flags or env."""

    endpoint_hint = str(endpoint_env_names[0]) if endpoint_env_names else "endpoint env"
    token_hint = str(token_env_names[0]) if token_env_names else "token env"
    resolved_endpoint = (endpoint or env_or_none(*endpoint_env_names) or "").strip().rstrip("/")
    if not resolved_endpoint:
        raise MissingEndpointError(f"missing endpoint (pass --endpoint or set {endpoint_hint})")

    token_value = _require_non_empty(
        token or env_or_none(*token_env_names),
        name=token_name,
        hint=f"pass --{token_name.replace('_', '-')} or set {token_hint}",
    )
    parts = token_value.split(".")
    if len(parts) != 3 or any(not p.strip() for p in parts):
        raise InvalidTokenShapeError(
            f"{token_name} is not a JWT (expected 3 dot-separated segments)"
        )
    return BearerRequestAuth(endpoint=resolved_endpoint, token=token_value)
