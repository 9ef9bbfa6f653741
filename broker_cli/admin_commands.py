from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from . import auth_inputs
from .cli_shared import (
    BROKER_API_BASE_URL,
    BROKER_COGNITO_PASSWORD,
    BROKER_COGNITO_USERNAME,
    BROKER_CREDENTIALS_ENDPOINT,
    BROKER_ID_TOKEN,
    BROKER_SESSION_TOKEN,
    BROKER_USER_POOL_CLIENT_ID,
    BROKER_USER_POOL_ID,
    DEFAULT_GROUP,
    GlobalOpts,
    OpError,
    UsageError,
    _account_session,
    _configured_groups,
    _decode_json_body,
    _env_or_none,
    _eprint,
    _http_request,
    _jwt_payload,
    _print_json,
    _require_str,
)


@dataclass
class AdminContext:
    session: Any
    user_pool_id: str = ""

    def resolve_user_pool_id(self, override: str | None) -> str:
        return _require_str(
            override or self.user_pool_id or _env_or_none(BROKER_USER_POOL_ID),
            "user pool id",
            hint=f"--user-pool-id or env {BROKER_USER_POOL_ID}",
        )

    def resolve_user_pool_client_id(self, override: str | None) -> str:
        return _require_str(
            override or _env_or_none(BROKER_USER_POOL_CLIENT_ID),
            "user pool client id",
            hint=f"--client-id or env {BROKER_USER_POOL_CLIENT_ID}",
        )


def build_admin_context(g: GlobalOpts) -> AdminContext:
    return AdminContext(session=_account_session(), user_pool_id=g.user_pool_id)


def _user_groups(c: Any, *, user_pool_id: str, username: str) -> list[str]:
    names: list[str] = []
    kwargs: dict[str, Any] = {"UserPoolId": user_pool_id, "Username": username}
    while True:
        try:
            resp = c.admin_list_groups_for_user(**kwargs)
        except Exception as e:
            raise OpError(f"cognito admin-list-groups-for-user failed: {e}") from e
        for grp in resp.get("Groups") or []:
            name = str(grp.get("GroupName") or "").strip()
            if name:
                names.append(name)
        token = resp.get("NextToken")
        if not token:
            return names
        kwargs["NextToken"] = token


def _require_username(raw: str | None) -> str:
    username = str(raw or "").strip()
    if not username:
        raise UsageError("username cannot be empty")
    return username


def _require_group(raw: str | None, configured: tuple[str, ...]) -> str:
    group = str(raw or "").strip()
    if group not in configured:
        raise UsageError(f"unknown group {group!r} (configured: {', '.join(configured)})")
    return group


def assignment_result(current: list[str], group: str, configured: tuple[str, ...]) -> str:
    """
    Same rule as the confirmation trigger: keep a member, leave anyone who
    already holds a configured group alone, otherwise assign.
    """

    if group in current:
        return "already_member"
    if any(name in configured for name in current):
        return "already_assigned"
    return "assign"


def cmd_groups_list(args: argparse.Namespace, g: GlobalOpts) -> int:
    ctx = build_admin_context(g)
    user_pool_id = ctx.resolve_user_pool_id(args.user_pool_id)
    username = _require_username(args.username)
    c = ctx.session.client("cognito-idp")
    groups = _user_groups(c, user_pool_id=user_pool_id, username=username)
    _print_json(
        {
            "username": username,
            "userPoolId": user_pool_id,
            "groups": groups,
            "ambiguous": len(groups) > 1,
        },
        pretty=g.pretty,
    )
    return 0


def cmd_groups_assign(args: argparse.Namespace, g: GlobalOpts) -> int:
    """Re-run the post-confirmation group assignment for one identity."""

    ctx = build_admin_context(g)
    user_pool_id = ctx.resolve_user_pool_id(args.user_pool_id)
    username = _require_username(args.username)
    configured = _configured_groups()
    group = _require_group(args.group or DEFAULT_GROUP, configured)
    c = ctx.session.client("cognito-idp")

    current = _user_groups(c, user_pool_id=user_pool_id, username=username)
    result = assignment_result(current, group, configured)
    if result == "assign":
        try:
            c.admin_add_user_to_group(UserPoolId=user_pool_id, Username=username, GroupName=group)
        except Exception as e:
            raise OpError(f"cognito admin-add-user-to-group failed: {e}") from e
        result = "assigned"

    _print_json(
        {"username": username, "userPoolId": user_pool_id, "group": group, "result": result, "groups": current},
        pretty=g.pretty,
    )
    return 0


def cmd_groups_set(args: argparse.Namespace, g: GlobalOpts) -> int:
    ctx = build_admin_context(g)
    user_pool_id = ctx.resolve_user_pool_id(args.user_pool_id)
    username = _require_username(args.username)
    group = _require_group(_require_str(args.group, "group", hint="GROUP argument"), _configured_groups())
    c = ctx.session.client("cognito-idp")

    current = _user_groups(c, user_pool_id=user_pool_id, username=username)
    removed: list[str] = []
    for name in current:
        if name == group:
            continue
        try:
            c.admin_remove_user_from_group(UserPoolId=user_pool_id, Username=username, GroupName=name)
        except Exception as e:
            raise OpError(f"cognito admin-remove-user-from-group failed for {name!r}: {e}") from e
        removed.append(name)

    added = group not in current
    if added:
        try:
            c.admin_add_user_to_group(UserPoolId=user_pool_id, Username=username, GroupName=group)
        except Exception as e:
            raise OpError(f"cognito admin-add-user-to-group failed: {e}") from e

    if not g.quiet and (removed or added):
        _eprint("note: credentials already issued keep their role until they expire")
    _print_json(
        {"username": username, "userPoolId": user_pool_id, "group": group, "added": added, "removed": removed},
        pretty=g.pretty,
    )
    return 0


def _resolve_cognito_basic_credentials(*, username: str | None, password: str | None) -> auth_inputs.BasicCredentials:
    try:
        return auth_inputs.resolve_basic_credentials(
            username=username,
            password=password,
            env_or_none=_env_or_none,
            username_env_names=(BROKER_COGNITO_USERNAME,),
            password_env_names=(BROKER_COGNITO_PASSWORD,),
        )
    except auth_inputs.AuthInputError as e:
        raise UsageError(str(e)) from e


def _cognito_auth_result(
    *,
    ctx: AdminContext,
    client_id_override: str | None,
    username: str,
    password: str,
    mfa_code: str | None,
) -> dict[str, Any]:
    client_id = ctx.resolve_user_pool_client_id(client_id_override)
    c = ctx.session.client("cognito-idp")
    try:
        resp = c.initiate_auth(
            ClientId=client_id,
            AuthFlow="USER_PASSWORD_AUTH",
            AuthParameters={"USERNAME": username, "PASSWORD": password},
        )
    except Exception as e:
        raise OpError(f"cognito initiate-auth failed: {e}") from e

    challenge = str(resp.get("ChallengeName") or "")
    if challenge == "SOFTWARE_TOKEN_MFA":
        code = (mfa_code or "").strip()
        if not code:
            raise UsageError("user pool requires MFA (pass --mfa-code with the current TOTP code)")
        try:
            resp = c.respond_to_auth_challenge(
                ClientId=client_id,
                ChallengeName=challenge,
                Session=resp.get("Session"),
                ChallengeResponses={"USERNAME": username, "SOFTWARE_TOKEN_MFA_CODE": code},
            )
        except Exception as e:
            raise OpError(f"cognito respond-to-auth-challenge failed: {e}") from e
    elif challenge:
        raise OpError(f"unsupported cognito challenge: {challenge}")

    auth = resp.get("AuthenticationResult")
    return auth if isinstance(auth, dict) else {}


def cmd_cognito_id_token(args: argparse.Namespace, g: GlobalOpts) -> int:
    creds = _resolve_cognito_basic_credentials(username=args.username, password=args.password)
    ctx = build_admin_context(g)
    auth = _cognito_auth_result(
        ctx=ctx,
        client_id_override=args.client_id,
        username=creds.username,
        password=creds.password,
        mfa_code=args.mfa_code,
    )

    if args.json:
        out = {
            "idToken": auth.get("IdToken"),
            "accessToken": auth.get("AccessToken"),
            "refreshToken": auth.get("RefreshToken"),
            "expiresIn": auth.get("ExpiresIn"),
            "tokenType": auth.get("TokenType"),
        }
        _print_json(out, pretty=g.pretty)
        return 0

    tok = str(auth.get("IdToken") or "").strip()
    if not tok:
        raise OpError("missing IdToken in Cognito response")
    sys.stdout.write(tok + "\n")
    return 0


def _error_message(status: int, payload: Any) -> str:
    if isinstance(payload, dict):
        code = str(payload.get("errorCode") or "").strip()
        msg = str(payload.get("message") or "").strip()
        if code:
            return f"HTTP {status} {code}: {msg}"
    return f"HTTP {status}"


def cmd_credentials_issue(args: argparse.Namespace, g: GlobalOpts) -> int:
    try:
        req = auth_inputs.resolve_bearer_request(
            endpoint=args.endpoint,
            endpoint_env_names=(BROKER_CREDENTIALS_ENDPOINT,),
            token=args.id_token,
            token_env_names=(BROKER_ID_TOKEN,),
            token_name="id_token",
            env_or_none=_env_or_none,
        )
    except auth_inputs.AuthInputError as e:
        raise UsageError(str(e)) from e

    status, _headers, data = _http_request(
        method="POST",
        url=req.endpoint,
        headers={"authorization": f"Bearer {req.token}", "accept": "application/json"},
        body=b"",
    )
    payload = _decode_json_body(data)
    if status != 200 or not isinstance(payload, dict):
        raise OpError(f"credential issuance failed: {_error_message(status, payload)}")

    if args.session_token_only:
        token = str((payload.get("credentials") or {}).get("sessionToken") or "").strip()
        if not token:
            raise OpError("missing credentials.sessionToken in broker response")
        sys.stdout.write(token + "\n")
        return 0
    _print_json(payload, pretty=g.pretty)
    return 0


def cmd_credentials_inspect(args: argparse.Namespace, g: GlobalOpts) -> int:
    token = _require_str(
        args.session_token or _env_or_none(BROKER_SESSION_TOKEN),
        "session token",
        hint=f"--session-token or env {BROKER_SESSION_TOKEN}",
    )
    # Display only: the signature is checked by the enforcement point, not here.
    claims = _jwt_payload(token)
    try:
        exp = int(claims.get("exp") or 0)
    except (TypeError, ValueError):
        exp = 0
    expires_at = datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None
    grants = [
        {"verb": item[0], "resource": item[1]}
        for item in (claims.get("allow") or [])
        if isinstance(item, list) and len(item) == 2
    ]
    _print_json(
        {
            "credentialId": claims.get("jti"),
            "sub": claims.get("sub"),
            "role": claims.get("role"),
            "grants": grants,
            "expiresAt": expires_at.isoformat() if expires_at else None,
            "expired": expires_at is None or expires_at <= datetime.now(timezone.utc),
            "configVersion": claims.get("cfg"),
        },
        pretty=g.pretty,
    )
    return 0


def cmd_invoke(args: argparse.Namespace, g: GlobalOpts) -> int:
    try:
        req = auth_inputs.resolve_bearer_request(
            endpoint=args.base_url,
            endpoint_env_names=(BROKER_API_BASE_URL,),
            token=args.session_token,
            token_env_names=(BROKER_SESSION_TOKEN,),
            token_name="session_token",
            env_or_none=_env_or_none,
        )
    except auth_inputs.AuthInputError as e:
        raise UsageError(str(e)) from e

    verb = _require_str(args.verb, "verb", hint="VERB argument").upper()
    resource = _require_str(args.resource, "resource", hint="RESOURCE argument")
    if not resource.startswith("/"):
        raise UsageError(f"resource must start with '/': {resource!r}")

    body = args.data.encode("utf-8") if args.data else None
    status, _headers, data = _http_request(
        method=verb,
        url=req.endpoint + resource,
        headers={"authorization": f"Bearer {req.token}"},
        body=body,
    )
    _print_json(
        {"verb": verb, "resource": resource, "status": status, "allowed": 200 <= status < 300, "body": _decode_json_body(data)},
        pretty=g.pretty,
    )
    return 0 if 200 <= status < 300 else 1
