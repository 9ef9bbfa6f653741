import json

import pytest


def _doc():
    return {
        "version": "v-test",
        "defaultGroup": "reader",
        "ambiguousRoleResolution": "deny",
        "operations": [
            {"verb": "GET", "resource": "/items", "handler": "read"},
            {"verb": "POST", "resource": "/items", "handler": "write"},
        ],
        "roles": [
            {"name": "r", "allow": [{"verb": "GET", "resource": "/items"}]},
            {"name": "w", "allow": [{"verb": "GET", "resource": "/items"}, {"verb": "POST", "resource": "/items"}]},
        ],
        "groups": [
            {"name": "reader", "precedence": 2, "role": "r"},
            {"name": "writer", "precedence": 1, "role": "w"},
        ],
    }


def test_reference_config_maps_reader_and_writer(load_lambda):
    m = load_lambda()
    cfg = m.broker_policy.load_config()
    op = m.broker_policy.Operation

    assert cfg.default_group == "reader"
    assert cfg.ambiguous_resolution == "deny"
    assert cfg.groups["reader"].precedence == 2
    assert cfg.groups["writer"].precedence == 1
    assert cfg.role_for_group("reader").allow == frozenset({op("GET", "/user-group-based")})
    assert cfg.role_for_group("writer").allow == frozenset(
        {op("GET", "/user-group-based"), op("POST", "/user-group-based")}
    )
    assert cfg.handler_for(op("GET", "/user-group-based")) == "read"
    assert cfg.handler_for(op("POST", "/user-group-based")) == "write"
    assert cfg.handler_for(op("DELETE", "/user-group-based")) is None


def test_config_rejects_two_groups_sharing_a_role(load_lambda):
    m = load_lambda()
    doc = _doc()
    doc["groups"][1]["role"] = "r"
    with pytest.raises(m.broker_errors.ConfigurationError, match="mapped to both"):
        m.broker_policy.parse_config(doc)


def test_config_rejects_unknown_default_group(load_lambda):
    m = load_lambda()
    doc = _doc()
    doc["defaultGroup"] = "admins"
    with pytest.raises(m.broker_errors.ConfigurationError, match="Default group"):
        m.broker_policy.parse_config(doc)


def test_config_rejects_wildcard_resources(load_lambda):
    m = load_lambda()
    doc = _doc()
    doc["roles"][0]["allow"] = [{"verb": "GET", "resource": "/items/*"}]
    with pytest.raises(m.broker_errors.ConfigurationError, match="wildcards"):
        m.broker_policy.parse_config(doc)


@pytest.mark.parametrize("resource", ["/items/{id}", "/files/{proxy+}", "/{proxy+}"])
def test_config_rejects_templated_resources(load_lambda, resource):
    m = load_lambda()
    doc = _doc()
    doc["operations"].append({"verb": "GET", "resource": resource, "handler": "read"})
    doc["roles"][0]["allow"].append({"verb": "GET", "resource": resource})
    with pytest.raises(m.broker_errors.ConfigurationError, match="path templates"):
        m.broker_policy.parse_config(doc)


def test_config_rejects_role_allowing_undeclared_operation(load_lambda):
    m = load_lambda()
    doc = _doc()
    doc["roles"][0]["allow"].append({"verb": "DELETE", "resource": "/items"})
    with pytest.raises(m.broker_errors.ConfigurationError, match="undeclared operation"):
        m.broker_policy.parse_config(doc)


def test_config_rejects_lower_case_verbs(load_lambda):
    m = load_lambda()
    doc = _doc()
    doc["operations"][0]["verb"] = "get"
    with pytest.raises(m.broker_errors.ConfigurationError, match="upper case"):
        m.broker_policy.parse_config(doc)


def test_config_rejects_unknown_resolution_policy(load_lambda):
    m = load_lambda()
    with pytest.raises(m.broker_errors.ConfigurationError, match="ambiguousRoleResolution"):
        m.broker_policy.parse_config(_doc(), ambiguous_resolution="first-wins")


def test_load_config_reads_path_from_env(load_lambda, broker_env, tmp_path):
    m = load_lambda()
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps(_doc()), encoding="utf-8")
    broker_env.setenv("BROKER_CONFIG_PATH", str(path))
    broker_env.setenv("AMBIGUOUS_ROLE_RESOLUTION", "highest-precedence")

    cfg = m.broker_policy.load_config()

    assert cfg.version == "v-test"
    assert cfg.ambiguous_resolution == "highest-precedence"


def test_load_config_invalid_json_is_a_configuration_error(load_lambda, tmp_path):
    m = load_lambda()
    path = tmp_path / "cfg.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(m.broker_errors.ConfigurationError, match="Invalid JSON"):
        m.broker_policy.load_config(path)


def test_group_claims_normalizes_and_dedupes(load_lambda):
    m = load_lambda()
    assert m.broker_policy.group_claims(None) == []
    assert m.broker_policy.group_claims("reader") == ["reader"]
    assert m.broker_policy.group_claims(["reader", " reader ", "", "writer"]) == ["reader", "writer"]
    assert m.broker_policy.group_claims({"reader": True}) == []


def test_resolve_group_single(load_lambda):
    m = load_lambda()
    cfg = m.broker_policy.parse_config(_doc())
    assert m.broker_policy.resolve_group(cfg, ["writer"]).role.name == "w"


@pytest.mark.parametrize("names", [[], ["reader", "writer"], ["auditors"], ["reader", "auditors"]])
def test_resolve_group_fails_closed_under_deny(load_lambda, names):
    m = load_lambda()
    cfg = m.broker_policy.parse_config(_doc())
    with pytest.raises(m.broker_errors.AmbiguousOrMissingGroup):
        m.broker_policy.resolve_group(cfg, names)


def test_resolve_group_highest_precedence_is_opt_in(load_lambda):
    m = load_lambda()
    cfg = m.broker_policy.parse_config(_doc(), ambiguous_resolution="highest-precedence")
    assert m.broker_policy.resolve_group(cfg, ["reader", "writer"]).name == "writer"
    with pytest.raises(m.broker_errors.AmbiguousOrMissingGroup):
        m.broker_policy.resolve_group(cfg, [])


def test_resolve_group_precedence_tie_fails_closed(load_lambda):
    m = load_lambda()
    doc = _doc()
    doc["groups"][1]["precedence"] = 2
    cfg = m.broker_policy.parse_config(doc, ambiguous_resolution="highest-precedence")
    with pytest.raises(m.broker_errors.AmbiguousOrMissingGroup, match="tie"):
        m.broker_policy.resolve_group(cfg, ["reader", "writer"])
