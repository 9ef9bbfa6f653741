import json
import os
import time
from datetime import datetime, timezone
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from broker_errors import BrokerError, UpstreamAssignmentFailure
from broker_policy import BrokerConfig, load_config

SCHEMA_VERSION = os.environ.get("SCHEMA_VERSION", "2026-10-01")
OPERATOR_ALERT_TOPIC_ARN = os.environ.get("OPERATOR_ALERT_TOPIC_ARN", "")
CONFIRM_SIGN_UP = "PostConfirmation_ConfirmSignUp"

_config: BrokerConfig | None = None
_cognito_client = None
_sns_client = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _aws_region() -> str | None:
    return os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION")


def _broker_config() -> BrokerConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def _cognito():
    global _cognito_client
    if _cognito_client is None:
        _cognito_client = boto3.client("cognito-idp", region_name=_aws_region())
    return _cognito_client


def _sns():
    global _sns_client
    if _sns_client is None:
        _sns_client = boto3.client("sns", region_name=_aws_region())
    return _sns_client


def _current_groups(user_pool_id: str, username: str) -> list[str]:
    names: list[str] = []
    kwargs: dict[str, Any] = {"UserPoolId": user_pool_id, "Username": username}
    while True:
        out = _cognito().admin_list_groups_for_user(**kwargs)
        for g in out.get("Groups") or []:
            name = str(g.get("GroupName") or "").strip()
            if name:
                names.append(name)
        token = out.get("NextToken")
        if not token:
            return names
        kwargs["NextToken"] = token


def assign_default_group(user_pool_id: str, username: str) -> str:
    """
    Idempotently place `username` in the default group.

    Returns "assigned", "already_member" or "already_assigned" (identity holds
    another configured group and is left alone so it never ends up with two).
    """

    config = _broker_config()
    try:
        current = _current_groups(user_pool_id, username)
        if config.default_group in current:
            return "already_member"
        if any(name in config.groups for name in current):
            return "already_assigned"
        # AdminAddUserToGroup is itself idempotent, so a concurrent redelivery is harmless.
        _cognito().admin_add_user_to_group(
            UserPoolId=user_pool_id,
            Username=username,
            GroupName=config.default_group,
        )
    except (ClientError, BotoCoreError) as e:
        raise UpstreamAssignmentFailure(f"{type(e).__name__}: {e}") from e
    return "assigned"


def _alert_operators(wide_event: dict[str, Any]) -> None:
    if not OPERATOR_ALERT_TOPIC_ARN:
        return
    try:
        _sns().publish(
            TopicArn=OPERATOR_ALERT_TOPIC_ARN,
            Subject="Group assignment failed",
            Message=json.dumps(wide_event, sort_keys=True),
        )
        wide_event["operator_alert"] = "sent"
    except Exception as e:
        # A failed alert must never fail the confirmation.
        wide_event["operator_alert"] = "failed"
        wide_event["operator_alert_error"] = {"type": type(e).__name__, "message": str(e)}


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    start = time.time()
    user_pool_id = str(event.get("userPoolId") or "").strip()
    username = str(event.get("userName") or "").strip()
    trigger_source = str(event.get("triggerSource") or "").strip()

    wide_event: dict[str, Any] = {
        "event": "group_broker_post_confirmation",
        "schema_version": SCHEMA_VERSION,
        "ts": _now_iso(),
        "principal": {"user_pool_id": user_pool_id, "username": username},
        "trigger_source": trigger_source,
    }

    # The confirmation is always acknowledged; grouping failures never roll it back.
    try:
        if trigger_source and trigger_source != CONFIRM_SIGN_UP:
            wide_event["outcome"] = "ignored"
            return event
        if not user_pool_id or not username:
            wide_event["outcome"] = "invalid_event"
            wide_event["level"] = "error"
            return event
        config = _broker_config()
        wide_event["config_version"] = config.version
        wide_event["group"] = config.default_group
        wide_event["outcome"] = assign_default_group(user_pool_id, username)
        return event
    except BrokerError as exc:
        wide_event["outcome"] = exc.outcome
        wide_event["level"] = "error"
        wide_event["error"] = {"type": type(exc).__name__, "message": str(exc)}
        _alert_operators(wide_event)
        return event
    except Exception as exc:
        wide_event["outcome"] = "error"
        wide_event["level"] = "error"
        wide_event["error"] = {"type": type(exc).__name__, "message": str(exc)}
        _alert_operators(wide_event)
        return event
    finally:
        wide_event["duration_ms"] = int((time.time() - start) * 1000)
        print(json.dumps(wide_event, separators=(",", ":"), sort_keys=True))
