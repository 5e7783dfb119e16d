"""Tests for gateway config loading, policy parsing and the policy store."""

from __future__ import annotations

from pathlib import Path

import pytest

from actiongate.config import (
    ActionRelevanceConfig,
    OverrideMode,
    PolicyStore,
    UncertaintyAction,
    load_config,
    parse_config,
    parse_policy_config,
    resolve_env_vars,
)
from actiongate.errors import ConfigError
from actiongate.models import ActionScope

pytestmark = pytest.mark.unit


def _write(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "gateway.toml"
    path.write_text(content)
    return path


class TestLoadConfig:
    def test_minimal_config_uses_defaults(self, tmp_path: Path):
        config = load_config(_write(tmp_path, '[gateway]\nname = "crm"\n'))

        assert config.name == "crm"
        assert config.database_dsn is None
        assert config.semantic is None
        assert config.policy == ActionRelevanceConfig()
        assert config.logging.level == "INFO"
        assert config.notifications.operator_id == "operations"
        assert config.source_path == tmp_path / "gateway.toml"

    def test_full_config(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("SCORER_KEY", "sk-test")
        path = _write(
            tmp_path,
            """
[gateway]
name = "crm"
database_dsn = "postgresql://localhost/actions"

[logging]
level = "debug"
format = "json"

[policy]
minimum_confidence = 0.75
override_mode = "always_ask"
default_action_on_uncertainty = "approve"
always_require_approval_actions = ["SEND_EMAIL"]
never_require_approval_actions = ["LOG_INTERACTION"]
user_approval_timeout_minutes = 30

[policy.scope_confidence_floors]
real_world = 0.9

[semantic]
endpoint = "https://llm.example.com/v1/chat/completions"
api_key = "${SCORER_KEY}"

[notifications]
webhook_url = "https://hooks.example.com/approvals"
operator_id = "night-shift"
""",
        )

        config = load_config(path)

        assert config.database_dsn == "postgresql://localhost/actions"
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"
        assert config.policy.minimum_confidence == 0.75
        assert config.policy.override_mode == OverrideMode.ALWAYS_ASK
        assert config.policy.default_action_on_uncertainty == UncertaintyAction.APPROVE
        assert config.policy.always_require_approval_actions == frozenset({"SEND_EMAIL"})
        assert config.policy.user_approval_timeout_minutes == 30
        assert config.policy.scope_confidence_floors[ActionScope.REAL_WORLD] == 0.9
        assert config.policy.scope_confidence_floors[ActionScope.HYBRID] == 0.7
        assert config.semantic is not None
        assert config.semantic.api_key == "sk-test"
        assert config.notifications.webhook_url == "https://hooks.example.com/approvals"
        assert config.notifications.operator_id == "night-shift"

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "missing.toml")

    def test_invalid_toml(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(_write(tmp_path, "[gateway\nname="))

    def test_missing_gateway_section(self):
        with pytest.raises(ConfigError, match=r"\[gateway\]"):
            parse_config({"policy": {}})

    def test_missing_name(self):
        with pytest.raises(ConfigError, match="gateway.name"):
            parse_config({"gateway": {"name": "  "}})

    def test_semantic_requires_endpoint(self):
        with pytest.raises(ConfigError, match="semantic.endpoint"):
            parse_config({"gateway": {"name": "crm"}, "semantic": {"model": "x"}})

    def test_invalid_log_format(self):
        with pytest.raises(ConfigError, match="logging.format"):
            parse_config({"gateway": {"name": "crm"}, "logging": {"format": "xml"}})


class TestEnvResolution:
    def test_resolves_nested_values(self, monkeypatch):
        monkeypatch.setenv("DB_HOST", "db.internal")
        resolved = resolve_env_vars({"a": ["postgres://${DB_HOST}/x", 3], "b": {"c": True}})
        assert resolved == {"a": ["postgres://db.internal/x", 3], "b": {"c": True}}

    def test_missing_variable_is_reported(self, monkeypatch):
        monkeypatch.delenv("NOPE_NOT_SET", raising=False)
        with pytest.raises(ConfigError, match="NOPE_NOT_SET"):
            resolve_env_vars("${NOPE_NOT_SET}")


class TestPolicyParsing:
    def test_round_trip(self):
        policy = parse_policy_config(
            {
                "check_timeout_seconds": 12.5,
                "minimum_confidence": 0.6,
                "override_mode": "llm_decision",
                "bulk_approval_enabled": False,
                "max_concurrent_checks": 3,
                "scope_confidence_floors": {"inner_world": 0.4},
            }
        )
        assert parse_policy_config(policy.to_dict()) == policy

    def test_default_round_trip(self):
        assert parse_policy_config(ActionRelevanceConfig().to_dict()) == ActionRelevanceConfig()

    def test_none_gives_defaults(self):
        assert parse_policy_config(None) == ActionRelevanceConfig()

    @pytest.mark.parametrize(
        "raw, match",
        [
            ({"minimum_confidence": 1.5}, "between 0 and 1"),
            ({"user_approval_threshold": "high"}, "must be a number"),
            ({"check_timeout_seconds": 0}, "greater than 0"),
            ({"defer_minutes": 1.5}, "whole number"),
            ({"semantic_validation_enabled": "yes"}, "true or false"),
            ({"override_mode": "sometimes"}, "override_mode"),
            ({"default_action_on_uncertainty": "maybe"}, "default_action_on_uncertainty"),
            ({"always_require_approval_actions": "SEND_EMAIL"}, "list of action types"),
            ({"never_require_approval_actions": [""]}, "non-empty strings"),
            ({"scope_confidence_floors": {"outer_space": 0.5}}, "scope_confidence_floors"),
        ],
    )
    def test_invalid_values(self, raw, match):
        with pytest.raises(ConfigError, match=match):
            parse_policy_config(raw)

    def test_confidence_floor_takes_the_stricter_value(self):
        policy = ActionRelevanceConfig(minimum_confidence=0.75)
        assert policy.confidence_floor(ActionScope.INNER_WORLD) == 0.75
        assert policy.confidence_floor(ActionScope.REAL_WORLD) == 0.8


class TestPolicyStore:
    def test_update_swaps_the_whole_policy(self):
        store = PolicyStore()
        snapshot = store.current

        updated = store.update({"override_mode": "never_ask"})

        assert store.current is updated
        assert updated.override_mode == OverrideMode.NEVER_ASK
        assert snapshot.override_mode == OverrideMode.RISK_BASED

    def test_invalid_update_keeps_current_policy(self):
        store = PolicyStore()
        before = store.current
        with pytest.raises(ConfigError):
            store.update({"minimum_confidence": 7})
        assert store.current is before

    def test_reload_reads_source_file(self, tmp_path: Path):
        path = _write(tmp_path, '[gateway]\nname = "crm"\n[policy]\ndefer_minutes = 15\n')
        store = PolicyStore(source_path=path)

        assert store.reload().defer_minutes == 15
        assert store.current.defer_minutes == 15

    def test_reload_without_source(self):
        with pytest.raises(ConfigError, match="no source file"):
            PolicyStore().reload()
