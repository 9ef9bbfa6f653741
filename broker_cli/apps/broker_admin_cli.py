from __future__ import annotations

import argparse
import contextlib
import io
import os
import sys
from typing import Any

import click
import typer
from dotenv import load_dotenv
from rich.console import Console

from .. import __version__
from ..admin_commands import (
    cmd_cognito_id_token,
    cmd_credentials_inspect,
    cmd_credentials_issue,
    cmd_groups_assign,
    cmd_groups_list,
    cmd_groups_set,
    cmd_invoke,
)
from ..cli_shared import (
    BROKER_COGNITO_PASSWORD,
    BROKER_COGNITO_USERNAME,
    BROKER_CREDENTIALS_ENDPOINT,
    BROKER_API_BASE_URL,
    BROKER_USER_POOL_ID,
    DEFAULT_GROUP,
    GlobalOpts,
    OpError,
    UsageError,
    _eprint,
)

_ERROR_CONSOLE = Console(stderr=True)

# Typer releases that ship their own click raise TyperException subclasses instead.
_CLI_ERRORS: tuple[type[Exception], ...] = (click.ClickException,) + (
    (typer.TyperException,) if hasattr(typer, "TyperException") else ()
)


def _rich_error(msg: str) -> None:
    _ERROR_CONSOLE.print(f"[bold red]error:[/bold red] {msg}")


def _root_help_text(*, root_app: typer.Typer, prog_name: str) -> str:
    buf = io.StringIO()
    try:
        with contextlib.redirect_stdout(buf):
            try:
                root_app(args=["--help"], prog_name=prog_name, standalone_mode=False)
            except (typer.Exit, *_CLI_ERRORS):
                pass
    except Exception:
        return ""
    return str(buf.getvalue() or "").strip()


def _render_usage_error_with_help(
    *,
    message: str,
    ctx: Any = None,
    fallback_help: str = "",
) -> None:
    _rich_error(message)
    help_text = ""
    if ctx is not None and hasattr(ctx, "get_help"):
        try:
            help_text = str(ctx.get_help() or "").strip()
        except Exception:
            help_text = ""
    if not help_text:
        help_text = str(fallback_help or "").strip()
    if help_text:
        _eprint("")
        _eprint(help_text)


def _namespace(**kwargs: Any) -> argparse.Namespace:
    return argparse.Namespace(**kwargs)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"broker-admin {__version__}")
        raise typer.Exit(code=0)


app = typer.Typer(
    name="broker-admin",
    help="Operate the group broker: memberships, tokens, credentials.",
    no_args_is_help=True,
    add_completion=False,
)
groups_app = typer.Typer(help="Group memberships in the user pool", no_args_is_help=True)
cognito_app = typer.Typer(help="Identity provider authentication", no_args_is_help=True)
credentials_app = typer.Typer(help="Broker-issued credentials", no_args_is_help=True)

app.add_typer(groups_app, name="groups")
app.add_typer(cognito_app, name="cognito")
app.add_typer(credentials_app, name="credentials")


def _apply_global_env(
    *,
    profile: str | None,
    region: str | None,
    user_pool_id: str | None,
    plain_json: bool,
    quiet: bool,
) -> GlobalOpts:
    if profile is not None:
        if not profile.strip():
            raise UsageError("--profile cannot be empty")
        os.environ["AWS_PROFILE"] = profile.strip()
    if region is not None:
        if not region.strip():
            raise UsageError("--region cannot be empty")
        os.environ["AWS_REGION"] = region.strip()
    return GlobalOpts(
        pretty=not plain_json,
        quiet=quiet,
        user_pool_id=(user_pool_id or "").strip(),
    )


@app.callback()
def app_callback(
    ctx: typer.Context,
    profile: str | None = typer.Option(None, "--profile", help="AWS CLI profile name (sets AWS_PROFILE)"),
    region: str | None = typer.Option(None, "--region", help="AWS region (sets AWS_REGION)"),
    user_pool_id: str | None = typer.Option(
        None,
        "--user-pool-id",
        help=f"Cognito user pool id (default: env {BROKER_USER_POOL_ID})",
    ),
    plain_json: bool = typer.Option(False, "--plain-json", help="Emit compact JSON output"),
    quiet: bool = typer.Option(False, "--quiet", help="Reduce stderr logging"),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    del version
    try:
        g = _apply_global_env(
            profile=profile,
            region=region,
            user_pool_id=user_pool_id,
            plain_json=plain_json,
            quiet=quiet,
        )
    except UsageError as e:
        _render_usage_error_with_help(message=str(e), ctx=ctx)
        raise typer.Exit(code=2)
    ctx.obj = {"g": g}


def _ctx_global(ctx: typer.Context) -> GlobalOpts:
    root = ctx.find_root()
    obj = root.obj if isinstance(root.obj, dict) else ctx.obj
    if isinstance(obj, dict) and isinstance(obj.get("g"), GlobalOpts):
        return obj["g"]
    return GlobalOpts(pretty=True, quiet=False)


def _invoke(ctx: typer.Context, func: Any, **kwargs: Any) -> None:
    g = _ctx_global(ctx)
    args = _namespace(**kwargs)
    try:
        code = int(func(args, g))
    except UsageError as e:
        _render_usage_error_with_help(message=str(e), ctx=ctx)
        raise typer.Exit(code=2)
    except OpError as e:
        _rich_error(str(e))
        raise typer.Exit(code=1)

    if code:
        raise typer.Exit(code=code)


def _invoke_from_locals(
    ctx: typer.Context,
    func: Any,
    local_vars: dict[str, Any],
    *,
    drop: tuple[str, ...] = ("ctx",),
) -> None:
    _invoke(ctx, func, **{k: v for k, v in local_vars.items() if k not in drop})


@groups_app.command("list", help="Show the groups a user currently belongs to.")
def groups_list(
    ctx: typer.Context,
    username: str = typer.Argument(...),
    user_pool_id: str | None = typer.Option(None, "--user-pool-id", help="Override user pool id"),
) -> None:
    _invoke_from_locals(ctx, cmd_groups_list, locals())


@groups_app.command(
    "assign",
    help="Re-run the default group assignment for a user whose confirmation trigger failed.",
)
def groups_assign(
    ctx: typer.Context,
    username: str = typer.Argument(...),
    group: str = typer.Option(DEFAULT_GROUP, "--group", help="Group to assign"),
    user_pool_id: str | None = typer.Option(None, "--user-pool-id", help="Override user pool id"),
) -> None:
    _invoke_from_locals(ctx, cmd_groups_assign, locals())


@groups_app.command("set", help="Move a user into exactly one group, removing any others.")
def groups_set(
    ctx: typer.Context,
    username: str = typer.Argument(...),
    group: str = typer.Argument(...),
    user_pool_id: str | None = typer.Option(None, "--user-pool-id", help="Override user pool id"),
) -> None:
    _invoke_from_locals(ctx, cmd_groups_set, locals())


@cognito_app.command("id-token", help="Authenticate a user and print the ID token.")
def cognito_id_token(
    ctx: typer.Context,
    username: str | None = typer.Option(None, "--username", help=f"Cognito username (or env {BROKER_COGNITO_USERNAME})"),
    password: str | None = typer.Option(None, "--password", help=f"Cognito password (or env {BROKER_COGNITO_PASSWORD})"),
    mfa_code: str | None = typer.Option(None, "--mfa-code", help="Current TOTP code when MFA is required"),
    client_id: str | None = typer.Option(None, "--client-id", help="Override app client id"),
    json_out: bool = typer.Option(False, "--json", help="Print JSON with all token fields"),
) -> None:
    _invoke(
        ctx,
        cmd_cognito_id_token,
        username=username,
        password=password,
        mfa_code=mfa_code,
        client_id=client_id,
        json=json_out,
    )


@credentials_app.command("issue", help="Exchange an ID token for a role-scoped credential.")
def credentials_issue(
    ctx: typer.Context,
    id_token: str | None = typer.Option(None, "--id-token", help="ID token (or env BROKER_ID_TOKEN)"),
    endpoint: str | None = typer.Option(
        None,
        "--endpoint",
        help=f"Broker credentials endpoint (or env {BROKER_CREDENTIALS_ENDPOINT})",
    ),
    session_token_only: bool = typer.Option(False, "--session-token-only", help="Print only the session token"),
) -> None:
    _invoke_from_locals(ctx, cmd_credentials_issue, locals())


@credentials_app.command("inspect", help="Show the role, grants and expiry carried by a session token.")
def credentials_inspect(
    ctx: typer.Context,
    session_token: str | None = typer.Option(None, "--session-token", help="Session token (or env BROKER_SESSION_TOKEN)"),
) -> None:
    _invoke_from_locals(ctx, cmd_credentials_inspect, locals())


@app.command("invoke", help="Call a protected operation with a session token.")
def invoke(
    ctx: typer.Context,
    verb: str = typer.Argument(..., help="HTTP method, e.g. GET"),
    resource: str = typer.Argument(..., help="Resource path, e.g. /user-group-based"),
    data: str | None = typer.Option(None, "--data", help="Request body"),
    session_token: str | None = typer.Option(None, "--session-token", help="Session token (or env BROKER_SESSION_TOKEN)"),
    base_url: str | None = typer.Option(None, "--base-url", help=f"API base URL (or env {BROKER_API_BASE_URL})"),
) -> None:
    _invoke_from_locals(ctx, cmd_invoke, locals())


def _run_cli(*, root_app: typer.Typer, prog_name: str, argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    # python-dotenv defaults: discover .env without overriding exported values.
    load_dotenv()
    try:
        result = root_app(args=argv, prog_name=prog_name, standalone_mode=False)
        if result is None:
            return 0
        return int(result)
    except typer.Exit as e:
        return int(e.exit_code)
    except _CLI_ERRORS as e:
        code = int(getattr(e, "exit_code", 1))
        message = e.format_message() if hasattr(e, "format_message") else str(e)
        # Usage errors (exit 2) carry the failing command context; show its help.
        if code == 2:
            _render_usage_error_with_help(message=message, ctx=getattr(e, "ctx", None))
            return 2
        _rich_error(message)
        return code
    except UsageError as e:
        _render_usage_error_with_help(
            message=str(e),
            fallback_help=_root_help_text(root_app=root_app, prog_name=prog_name),
        )
        return 2
    except OpError as e:
        _rich_error(str(e))
        return 1


def main(argv: list[str] | None = None) -> int:
    return _run_cli(root_app=app, prog_name="broker-admin", argv=argv)


if __name__ == "__main__":
    raise SystemExit(main())
