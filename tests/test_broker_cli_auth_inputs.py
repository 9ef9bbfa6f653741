import pytest

from broker_cli.auth_inputs import (
    AuthInputError,
    InvalidTokenShapeError,
    MissingEndpointError,
    resolve_basic_credentials,
    resolve_bearer_request,
)


def _env_lookup(env: dict[str, str]):
    def inner(*names: str):
        for n in names:
            v = (env.get(n) or "").strip()
            if v:
                return v
        return None

    return inner


def test_resolve_basic_credentials_prefers_flags_over_env():
    env_or_none = _env_lookup(
        {
            "BROKER_COGNITO_USERNAME": "env-user",
            "BROKER_COGNITO_PASSWORD": "env-pass",
        }
    )

    creds = resolve_basic_credentials(
        username="flag-user",
        password="flag-pass",
        env_or_none=env_or_none,
    )

    assert creds.username == "flag-user"
    assert creds.password == "flag-pass"


def test_resolve_basic_credentials_falls_back_to_env():
    env_or_none = _env_lookup({"BROKER_COGNITO_USERNAME": "env-user", "BROKER_COGNITO_PASSWORD": "env-pass"})
    creds = resolve_basic_credentials(username=None, password=None, env_or_none=env_or_none)
    assert (creds.username, creds.password) == ("env-user", "env-pass")


def test_resolve_basic_credentials_errors_when_username_missing():
    env_or_none = _env_lookup({"BROKER_COGNITO_PASSWORD": "pw"})

    with pytest.raises(
        AuthInputError,
        match="missing username \\(--username or env BROKER_COGNITO_USERNAME\\)",
    ):
        resolve_basic_credentials(username=None, password=None, env_or_none=env_or_none)


def test_resolve_bearer_request_strips_trailing_slash_and_reads_env():
    env_or_none = _env_lookup({"BROKER_ID_TOKEN": "h.p.s"})

    req = resolve_bearer_request(
        endpoint="https://broker.example.com/v1/credentials/",
        endpoint_env_names=("BROKER_CREDENTIALS_ENDPOINT",),
        token=None,
        token_env_names=("BROKER_ID_TOKEN",),
        token_name="id_token",
        env_or_none=env_or_none,
    )

    assert req.endpoint == "https://broker.example.com/v1/credentials"
    assert req.token == "h.p.s"


def test_resolve_bearer_request_requires_endpoint():
    with pytest.raises(MissingEndpointError, match="BROKER_CREDENTIALS_ENDPOINT"):
        resolve_bearer_request(
            endpoint=None,
            endpoint_env_names=("BROKER_CREDENTIALS_ENDPOINT",),
            token="h.p.s",
            token_env_names=("BROKER_ID_TOKEN",),
            token_name="id_token",
            env_or_none=_env_lookup({}),
        )


@pytest.mark.parametrize("token", ["opaque", "a.b", "a..c", "a.b.c.d"])
def test_resolve_bearer_request_rejects_non_jwt_tokens(token):
    with pytest.raises(InvalidTokenShapeError, match="session_token is not a JWT"):
        resolve_bearer_request(
            endpoint="https://api.example.com",
            endpoint_env_names=("BROKER_API_BASE_URL",),
            token=token,
            token_env_names=("BROKER_SESSION_TOKEN",),
            token_name="session_token",
            env_or_none=_env_lookup({}),
        )


def test_resolve_bearer_request_missing_token_hint_names_flag():
    with pytest.raises(AuthInputError, match="--session-token or set BROKER_SESSION_TOKEN"):
        resolve_bearer_request(
            endpoint="https://api.example.com",
            endpoint_env_names=("BROKER_API_BASE_URL",),
            token=None,
            token_env_names=("BROKER_SESSION_TOKEN",),
            token_name="session_token",
            env_or_none=_env_lookup({}),
        )
