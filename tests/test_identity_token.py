import pytest

from conftest import AUDIENCE, IdentityProvider


def test_verify_identity_token_returns_claims(load_lambda, idp):
    m = load_lambda()
    token = idp.id_token(groups=["reader"], sub="sub-1")

    claims = m.identity_token.verify_identity_token(token)

    assert claims["sub"] == "sub-1"
    assert claims["cognito:groups"] == ["reader"]
    assert idp.jwks.calls >= 1


@pytest.mark.parametrize(
    "overrides,match",
    [
        ({"iss": "https://cognito-idp.us-east-1.amazonaws.com/other"}, "issuer"),
        ({"aud": "other-client"}, "audience"),
        ({"token_use": "access"}, "not an ID token"),
    ],
)
def test_verify_identity_token_rejects_wrong_claims(load_lambda, idp, overrides, match):
    m = load_lambda()
    token = idp.id_token(groups=["reader"], **overrides)
    with pytest.raises(m.broker_errors.InvalidToken, match=match):
        m.identity_token.verify_identity_token(token)


def test_verify_identity_token_rejects_expired(load_lambda, idp):
    m = load_lambda()
    token = idp.id_token(groups=["reader"], expires_in=-10)
    with pytest.raises(m.broker_errors.InvalidToken, match="expired"):
        m.identity_token.verify_identity_token(token)


def test_verify_identity_token_rejects_foreign_signature(load_lambda):
    m = load_lambda()
    token = IdentityProvider().id_token(groups=["reader"])
    with pytest.raises(m.broker_errors.InvalidToken):
        m.identity_token.verify_identity_token(token)


def test_verify_identity_token_rejects_garbage(load_lambda):
    m = load_lambda()
    with pytest.raises(m.broker_errors.InvalidToken):
        m.identity_token.verify_identity_token("")
    with pytest.raises(m.broker_errors.InvalidToken):
        m.identity_token.verify_identity_token("not.a.jwt")


def test_verify_identity_token_requires_issuer_config(load_lambda, broker_env, idp):
    broker_env.delenv("IDENTITY_ISSUER")
    m = load_lambda()
    with pytest.raises(m.broker_errors.ConfigurationError):
        m.identity_token.verify_identity_token(idp.id_token(groups=["reader"]))


def test_jwks_url_defaults_to_issuer_well_known(load_lambda):
    m = load_lambda()
    assert m.identity_token._jwks_url().endswith("/us-east-1_TESTPOOL/.well-known/jwks.json")
    assert AUDIENCE == m.identity_token.IDENTITY_AUDIENCE


def test_bearer_token_is_case_insensitive(load_lambda):
    m = load_lambda()
    assert m.identity_token.bearer_token({"Authorization": "Bearer abc"}) == "abc"
    assert m.identity_token.bearer_token({"authorization": "bearer  xyz "}) == "xyz"
    assert m.identity_token.bearer_token({"Authorization": "Basic dTpw"}) == ""
    assert m.identity_token.bearer_token(None) == ""
