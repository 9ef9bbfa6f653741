from __future__ import annotations

import os
from typing import Any

import jwt
from jwt import PyJWKClient

from broker_errors import ConfigurationError, InvalidToken

IDENTITY_ISSUER = os.environ.get("IDENTITY_ISSUER", "")
IDENTITY_AUDIENCE = os.environ.get("IDENTITY_AUDIENCE", "")
IDENTITY_JWKS_URL = os.environ.get("IDENTITY_JWKS_URL", "")
IDENTITY_LEEWAY_SECONDS = int(os.environ.get("IDENTITY_LEEWAY_SECONDS", "0"))
GROUPS_CLAIM = "cognito:groups"

_jwks_client = None


def _jwks_url() -> str:
    if IDENTITY_JWKS_URL:
        return IDENTITY_JWKS_URL
    # Cognito publishes user pool keys at <issuer>/.well-known/jwks.json
    return IDENTITY_ISSUER.rstrip("/") + "/.well-known/jwks.json"


def _jwks():
    global _jwks_client
    if _jwks_client is None:
        _jwks_client = PyJWKClient(_jwks_url(), cache_keys=True)
    return _jwks_client


def bearer_token(headers: Any) -> str:
    if not isinstance(headers, dict):
        return ""
    for k, v in headers.items():
        if isinstance(k, str) and k.lower() == "authorization":
            raw = str(v or "").strip()
            if raw.lower().startswith("bearer "):
                return raw.split(" ", 1)[1].strip()
            return ""
    return ""


def verify_identity_token(token: str) -> dict[str, Any]:
    """
    Verify a user pool ID token and return its claims.

    Signature (JWKS of IDENTITY_ISSUER), issuer, audience, expiry and
    token_use are all checked; anything else raises InvalidToken.
    """

    if not IDENTITY_ISSUER or not IDENTITY_AUDIENCE:
        raise ConfigurationError("Identity issuer/audience not configured")
    if not token:
        raise InvalidToken("Missing identity token")
    try:
        signing_key = _jwks().get_signing_key_from_jwt(token)
        claims = jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            audience=IDENTITY_AUDIENCE,
            issuer=IDENTITY_ISSUER,
            leeway=IDENTITY_LEEWAY_SECONDS,
            options={"require": ["exp", "iss", "sub", "aud"]},
        )
    except jwt.ExpiredSignatureError:
        raise InvalidToken("Identity token expired") from None
    except jwt.InvalidIssuerError:
        raise InvalidToken("Unknown identity token issuer") from None
    except jwt.InvalidAudienceError:
        raise InvalidToken("Identity token audience mismatch") from None
    except jwt.PyJWKClientError as e:
        raise InvalidToken(f"No signing key for identity token: {e}") from None
    except jwt.InvalidTokenError as e:
        raise InvalidToken(f"Invalid identity token: {e}") from None

    if str(claims.get("token_use") or "") != "id":
        raise InvalidToken("Identity token is not an ID token")
    if not str(claims.get("sub") or "").strip():
        raise InvalidToken("Identity token missing subject")
    return claims
