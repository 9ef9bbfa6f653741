"""
Static group/role/operation configuration.

The document is loaded once per process and handed around as frozen
dataclasses; nothing in the broker mutates it after load. Layout:

  {
    "version": "...",
    "defaultGroup": "reader",
    "ambiguousRoleResolution": "deny" | "highest-precedence",
    "operations": [{"verb", "resource", "handler"}],
    "roles": [{"name", "allow": [{"verb", "resource"}]}],
    "groups": [{"name", "precedence", "role"}]
  }
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from broker_errors import AmbiguousOrMissingGroup, ConfigurationError

RESOLUTION_DENY = "deny"
RESOLUTION_HIGHEST_PRECEDENCE = "highest-precedence"
_RESOLUTIONS = (RESOLUTION_DENY, RESOLUTION_HIGHEST_PRECEDENCE)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "broker_config.json"


@dataclass(frozen=True, order=True)
class Operation:
    verb: str
    resource: str

    def as_dict(self) -> dict[str, str]:
        return {"verb": self.verb, "resource": self.resource}


@dataclass(frozen=True)
class Role:
    name: str
    allow: frozenset[Operation]

    def allows(self, op: Operation) -> bool:
        return op in self.allow


@dataclass(frozen=True)
class Group:
    name: str
    # Lower wins, same as Cognito. Only consulted under highest-precedence resolution.
    precedence: int
    role: Role


@dataclass(frozen=True)
class BrokerConfig:
    version: str
    default_group: str
    ambiguous_resolution: str
    groups: dict[str, Group]
    roles: dict[str, Role]
    handlers: dict[Operation, str]

    def group(self, name: str) -> Group | None:
        return self.groups.get(name)

    def role_for_group(self, name: str) -> Role:
        group = self.groups.get(name)
        if group is None:
            raise AmbiguousOrMissingGroup(f"Unknown group: {name}")
        return group.role

    def handler_for(self, op: Operation) -> str | None:
        return self.handlers.get(op)


def _require_text(raw: Any, label: str) -> str:
    val = str(raw or "").strip()
    if not val:
        raise ConfigurationError(f"Missing {label}")
    return val


def _parse_operation(raw: Any, label: str) -> Operation:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Invalid {label}: expected object")
    verb = _require_text(raw.get("verb"), f"{label}.verb")
    resource = _require_text(raw.get("resource"), f"{label}.resource")
    if verb != verb.upper():
        raise ConfigurationError(f"Invalid {label}.verb: {verb!r} must be upper case")
    if not resource.startswith("/"):
        raise ConfigurationError(f"Invalid {label}.resource: {resource!r} must start with '/'")
    if "*" in resource:
        raise ConfigurationError(f"Invalid {label}.resource: wildcards are not supported")
    # API Gateway templates like /items/{id} or /{proxy+} would match many concrete paths.
    if "{" in resource or "}" in resource:
        raise ConfigurationError(f"Invalid {label}.resource: path templates are not supported")
    return Operation(verb=verb, resource=resource)


def _list(doc: dict[str, Any], key: str) -> list[Any]:
    val = doc.get(key)
    if not isinstance(val, list) or not val:
        raise ConfigurationError(f"Config needs a non-empty {key!r} list")
    return val


def parse_config(
    doc: dict[str, Any],
    *,
    default_group: str = "",
    ambiguous_resolution: str = "",
) -> BrokerConfig:
    if not isinstance(doc, dict):
        raise ConfigurationError("Config document must be a JSON object")
    version = _require_text(doc.get("version"), "version")

    handlers: dict[Operation, str] = {}
    for i, raw in enumerate(_list(doc, "operations")):
        op = _parse_operation(raw, f"operations[{i}]")
        if op in handlers:
            raise ConfigurationError(f"Duplicate operation: {op.verb} {op.resource}")
        handlers[op] = _require_text(raw.get("handler"), f"operations[{i}].handler")

    roles: dict[str, Role] = {}
    for i, raw in enumerate(_list(doc, "roles")):
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Invalid roles[{i}]: expected object")
        name = _require_text(raw.get("name"), f"roles[{i}].name")
        if name in roles:
            raise ConfigurationError(f"Duplicate role: {name}")
        allow: set[Operation] = set()
        for j, raw_op in enumerate(raw.get("allow") or []):
            op = _parse_operation(raw_op, f"roles[{i}].allow[{j}]")
            if op not in handlers:
                raise ConfigurationError(
                    f"Role {name} allows undeclared operation: {op.verb} {op.resource}"
                )
            allow.add(op)
        roles[name] = Role(name=name, allow=frozenset(allow))

    groups: dict[str, Group] = {}
    role_owner: dict[str, str] = {}
    for i, raw in enumerate(_list(doc, "groups")):
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Invalid groups[{i}]: expected object")
        name = _require_text(raw.get("name"), f"groups[{i}].name")
        if name in groups:
            raise ConfigurationError(f"Duplicate group: {name}")
        role_name = _require_text(raw.get("role"), f"groups[{i}].role")
        if role_name not in roles:
            raise ConfigurationError(f"Group {name} references unknown role {role_name}")
        # Group -> Role must be injective: a shared role would leak privileges across groups.
        if role_name in role_owner:
            raise ConfigurationError(
                f"Role {role_name} is mapped to both {role_owner[role_name]} and {name}"
            )
        role_owner[role_name] = name
        try:
            precedence = int(raw.get("precedence"))
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid groups[{i}].precedence") from None
        groups[name] = Group(name=name, precedence=precedence, role=roles[role_name])

    default = (default_group or str(doc.get("defaultGroup") or "")).strip()
    if default not in groups:
        raise ConfigurationError(f"Default group {default!r} is not a configured group")

    resolution = (ambiguous_resolution or str(doc.get("ambiguousRoleResolution") or RESOLUTION_DENY))
    resolution = resolution.strip().lower()
    if resolution not in _RESOLUTIONS:
        raise ConfigurationError(f"Unsupported ambiguousRoleResolution: {resolution!r}")

    return BrokerConfig(
        version=version,
        default_group=default,
        ambiguous_resolution=resolution,
        groups=groups,
        roles=roles,
        handlers=handlers,
    )


def load_config(path: str | os.PathLike[str] | None = None) -> BrokerConfig:
    cfg_path = Path(path or os.environ.get("BROKER_CONFIG_PATH") or DEFAULT_CONFIG_PATH)
    try:
        doc = json.loads(cfg_path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigurationError(f"Cannot read config {cfg_path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in config {cfg_path}: {e}") from e
    return parse_config(
        doc,
        default_group=os.environ.get("DEFAULT_GROUP", ""),
        ambiguous_resolution=os.environ.get("AMBIGUOUS_ROLE_RESOLUTION", ""),
    )


def group_claims(raw: Any) -> list[str]:
    """Normalize a `cognito:groups` claim into a de-duplicated list."""

    if raw is None:
        return []
    if isinstance(raw, str):
        values: Iterable[Any] = [raw]
    elif isinstance(raw, (list, tuple)):
        values = raw
    else:
        return []
    out: list[str] = []
    for val in values:
        name = str(val or "").strip()
        if name and name not in out:
            out.append(name)
    return out


def resolve_group(config: BrokerConfig, names: list[str]) -> Group:
    if not names:
        raise AmbiguousOrMissingGroup("Identity has no group")
    unknown = [n for n in names if n not in config.groups]
    if unknown:
        raise AmbiguousOrMissingGroup(f"Identity has unknown group(s): {', '.join(sorted(unknown))}")
    if len(names) == 1:
        return config.groups[names[0]]
    if config.ambiguous_resolution != RESOLUTION_HIGHEST_PRECEDENCE:
        raise AmbiguousOrMissingGroup(
            f"Identity has {len(names)} groups and role resolution is deny"
        )
    ranked = sorted((config.groups[n] for n in names), key=lambda g: g.precedence)
    if ranked[0].precedence == ranked[1].precedence:
        raise AmbiguousOrMissingGroup("Identity groups tie on precedence")
    return ranked[0]
