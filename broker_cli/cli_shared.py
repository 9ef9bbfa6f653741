from __future__ import annotations

import base64
import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import boto3


class BrokerOpsError(Exception):
    pass


class UsageError(BrokerOpsError):
    pass


class OpError(BrokerOpsError):
    pass


BROKER_USER_POOL_ID = "BROKER_USER_POOL_ID"
BROKER_USER_POOL_CLIENT_ID = "BROKER_USER_POOL_CLIENT_ID"
BROKER_COGNITO_USERNAME = "BROKER_COGNITO_USERNAME"
BROKER_COGNITO_PASSWORD = "BROKER_COGNITO_PASSWORD"
BROKER_CREDENTIALS_ENDPOINT = "BROKER_CREDENTIALS_ENDPOINT"
BROKER_API_BASE_URL = "BROKER_API_BASE_URL"
BROKER_ID_TOKEN = "BROKER_ID_TOKEN"
BROKER_SESSION_TOKEN = "BROKER_SESSION_TOKEN"
BROKER_CONFIG_PATH = "BROKER_CONFIG_PATH"
DEFAULT_GROUP = "reader"
# Groups of the bundled policy document; BROKER_CONFIG_PATH points at a different one.
REFERENCE_GROUPS = ("reader", "writer")


def _eprint(msg: str) -> None:
    print(msg, file=sys.stderr)


@dataclass(frozen=True)
class GlobalOpts:
    pretty: bool
    quiet: bool
    user_pool_id: str = ""


def _env_or_none(*names: str) -> str | None:
    for n in names:
        v = (os.environ.get(n) or "").strip()
        if v:
            return v
    return None


def _require_str(val: str | None, name: str, *, hint: str) -> str:
    v = (val or "").strip()
    if not v:
        raise UsageError(f"missing {name} ({hint})")
    return v


def _configured_groups() -> tuple[str, ...]:
    path = _env_or_none(BROKER_CONFIG_PATH)
    if not path:
        return REFERENCE_GROUPS
    try:
        doc = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise UsageError(f"cannot read policy document {path} (env {BROKER_CONFIG_PATH}): {e}") from e
    raw = doc.get("groups") if isinstance(doc, dict) else None
    names: list[str] = []
    for g in raw or []:
        name = str(g.get("name") or "").strip() if isinstance(g, dict) else ""
        if name:
            names.append(name)
    if not names:
        raise UsageError(f"policy document {path} declares no groups")
    return tuple(names)


def _aws_region_from_env() -> str:
    region = (os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION") or "").strip()
    if not region:
        raise UsageError("missing AWS_REGION (set env or pass --region)")
    return region


def _account_session() -> Any:
    region = _aws_region_from_env()
    profile = (os.environ.get("AWS_PROFILE") or "").strip() or None
    return boto3.session.Session(profile_name=profile, region_name=region)


def _print_json(obj: Any, *, pretty: bool) -> None:
    if pretty:
        sys.stdout.write(json.dumps(obj, indent=2, sort_keys=True) + "\n")
    else:
        sys.stdout.write(json.dumps(obj, separators=(",", ":"), sort_keys=True) + "\n")


def _jwt_payload(token: str) -> dict[str, Any]:
    parts = (token or "").split(".")
    if len(parts) < 2:
        raise OpError("invalid JWT: expected at least 2 dot-separated parts")
    payload_b64 = parts[1]
    payload_b64 += "=" * (-len(payload_b64) % 4)
    try:
        raw = base64.urlsafe_b64decode(payload_b64.encode("utf-8"))
        val = json.loads(raw.decode("utf-8"))
    except Exception as e:
        raise OpError(f"invalid JWT payload: {e}") from e
    if not isinstance(val, dict):
        raise OpError("invalid JWT payload: expected JSON object")
    return val


def _http_request(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    body: bytes | None = None,
    timeout_seconds: int = 30,
) -> tuple[int, dict[str, str], bytes]:
    req = Request(url, data=body, method=str(method).upper())
    for k, v in headers.items():
        req.add_header(k, v)
    try:
        with urlopen(req, timeout=timeout_seconds) as resp:
            status = getattr(resp, "status", 200)
            hdrs = {k.lower(): v for k, v in dict(resp.headers).items()}
            data = resp.read()
            return int(status), hdrs, data
    except HTTPError as e:
        hdrs = {k.lower(): v for k, v in dict(e.headers).items()}
        data = e.read() if hasattr(e, "read") else b""
        return int(getattr(e, "code", 0) or 0), hdrs, data
    except URLError as e:
        raise OpError(f"http request failed: {e}") from e


def _decode_json_body(data: bytes) -> Any:
    text = data.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return text
