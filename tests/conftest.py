import importlib
import sys
import time
import types
import uuid

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

ISSUER = "https://cognito-idp.us-east-1.amazonaws.com/us-east-1_TESTPOOL"
AUDIENCE = "client-1"
SIGNING_KEY = "test-signing-key-0123456789abcdef0123456789"

# Reload order matters: later modules re-bind names imported from earlier ones.
_LAMBDA_MODULES = (
    "broker_errors",
    "broker_policy",
    "credential_codec",
    "identity_token",
    "business_handlers",
)


class FakeJwks:
    def __init__(self, public_key):
        self.public_key = public_key
        self.calls = 0

    def get_signing_key_from_jwt(self, token):
        self.calls += 1
        return types.SimpleNamespace(key=self.public_key)


class IdentityProvider:
    """Signs Cognito-shaped ID tokens with a throwaway RSA key."""

    def __init__(self):
        self.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.jwks = FakeJwks(self.private_key.public_key())

    def id_token(self, *, groups=None, sub=None, username="alice", expires_in=3600, **overrides):
        now = int(time.time())
        claims = {
            "sub": sub or str(uuid.uuid4()),
            "iss": ISSUER,
            "aud": AUDIENCE,
            "token_use": "id",
            "cognito:username": username,
            "iat": now,
            "exp": now + expires_in,
        }
        if groups is not None:
            claims["cognito:groups"] = groups
        claims.update(overrides)
        return jwt.encode(claims, self.private_key, algorithm="RS256", headers={"kid": "k1"})


@pytest.fixture(scope="session")
def idp():
    return IdentityProvider()


@pytest.fixture
def broker_env(monkeypatch):
    monkeypatch.setenv("AWS_REGION", "us-east-1")
    monkeypatch.setenv("IDENTITY_ISSUER", ISSUER)
    monkeypatch.setenv("IDENTITY_AUDIENCE", AUDIENCE)
    monkeypatch.setenv("CREDENTIAL_SIGNING_KEY", SIGNING_KEY)
    monkeypatch.setenv("CREDENTIAL_TTL_SECONDS", "3600")
    monkeypatch.setenv("MAX_TTL_SECONDS", "3600")
    monkeypatch.setenv("SCHEMA_VERSION", "2026-10-01")
    monkeypatch.delenv("BROKER_CONFIG_PATH", raising=False)
    monkeypatch.delenv("DEFAULT_GROUP", raising=False)
    monkeypatch.delenv("AMBIGUOUS_ROLE_RESOLUTION", raising=False)
    monkeypatch.delenv("CREDENTIAL_SIGNING_KEY_SSM_PARAMETER", raising=False)
    monkeypatch.delenv("OPERATOR_ALERT_TOPIC_ARN", raising=False)
    return monkeypatch


@pytest.fixture
def load_lambda(broker_env, idp):
    """Reload the lambda modules against the current env; returns a namespace of them."""

    if "lambda" not in sys.path:
        sys.path.insert(0, "lambda")

    def _load(*handlers):
        mods = {}
        for name in _LAMBDA_MODULES + tuple(handlers):
            mods[name] = importlib.reload(importlib.import_module(name))
        mods["identity_token"]._jwks_client = idp.jwks
        return types.SimpleNamespace(**mods)

    return _load
