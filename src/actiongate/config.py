"""Gateway configuration loading and validation.

Reads a TOML file, parses all sections, and returns a validated
GatewayConfig dataclass. The approval/relevance policy lives in the
``[policy]`` section and is parsed into a frozen ActionRelevanceConfig that
is shared by every component through a PolicyStore.
"""

from __future__ import annotations

import enum
import logging
import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from actiongate.errors import ConfigError
from actiongate.models import ActionScope

logger = logging.getLogger(__name__)

# Pattern matching ${VAR_NAME}: alphanumeric and underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

DEFAULT_ALWAYS_REQUIRE_APPROVAL: frozenset[str] = frozenset(
    {"SEND_EMAIL", "SEND_SMS", "SCHEDULE_MEETING", "UPDATE_DEAL_STAGE"}
)
DEFAULT_NEVER_REQUIRE_APPROVAL: frozenset[str] = frozenset(
    {"UPDATE_CONTACT_NOTES", "ADD_CONTACT_TAG", "LOG_INTERACTION"}
)
DEFAULT_SCOPE_CONFIDENCE_FLOORS: Mapping[ActionScope, float] = {
    ActionScope.INNER_WORLD: 0.5,
    ActionScope.HYBRID: 0.7,
    ActionScope.REAL_WORLD: 0.8,
}


class OverrideMode(enum.StrEnum):
    """How much human approval gates automated execution."""

    ALWAYS_ASK = "always_ask"
    NEVER_ASK = "never_ask"
    RISK_BASED = "risk_based"
    LLM_DECISION = "llm_decision"


class UncertaintyAction(enum.StrEnum):
    """Behaviour when relevance cannot be determined."""

    SUPPRESS = "suppress"
    APPROVE = "approve"


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_file: str | None = None


@dataclass(frozen=True)
class ActionRelevanceConfig:
    """Process-wide relevance and approval policy.

    Frozen: a policy change is a new value swapped into the PolicyStore,
    never an in-place mutation.
    """

    check_timeout_seconds: float = 30.0
    semantic_validation_enabled: bool = True
    rule_validation_enabled: bool = True
    minimum_confidence: float = 0.7
    max_context_age_minutes: int = 5
    default_action_on_uncertainty: UncertaintyAction = UncertaintyAction.SUPPRESS
    override_mode: OverrideMode = OverrideMode.RISK_BASED
    user_approval_threshold: float = 0.8
    always_require_approval_actions: frozenset[str] = DEFAULT_ALWAYS_REQUIRE_APPROVAL
    never_require_approval_actions: frozenset[str] = DEFAULT_NEVER_REQUIRE_APPROVAL
    user_approval_timeout_minutes: int = 60
    bulk_approval_enabled: bool = True
    notification_timeout_seconds: float = 10.0
    execution_grace_minutes: int = 60
    defer_minutes: int = 60
    max_concurrent_checks: int = 5
    scope_confidence_floors: Mapping[ActionScope, float] = field(
        default_factory=lambda: dict(DEFAULT_SCOPE_CONFIDENCE_FLOORS)
    )

    def confidence_floor(self, scope: ActionScope) -> float:
        """Minimum semantic confidence accepted for an action of *scope*."""
        return max(self.minimum_confidence, self.scope_confidence_floors.get(scope, 0.0))

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a TOML/JSON-safe dictionary accepted by parse_policy_config()."""
        return {
            "check_timeout_seconds": self.check_timeout_seconds,
            "semantic_validation_enabled": self.semantic_validation_enabled,
            "rule_validation_enabled": self.rule_validation_enabled,
            "minimum_confidence": self.minimum_confidence,
            "max_context_age_minutes": self.max_context_age_minutes,
            "default_action_on_uncertainty": self.default_action_on_uncertainty.value,
            "override_mode": self.override_mode.value,
            "user_approval_threshold": self.user_approval_threshold,
            "always_require_approval_actions": sorted(self.always_require_approval_actions),
            "never_require_approval_actions": sorted(self.never_require_approval_actions),
            "user_approval_timeout_minutes": self.user_approval_timeout_minutes,
            "bulk_approval_enabled": self.bulk_approval_enabled,
            "notification_timeout_seconds": self.notification_timeout_seconds,
            "execution_grace_minutes": self.execution_grace_minutes,
            "defer_minutes": self.defer_minutes,
            "max_concurrent_checks": self.max_concurrent_checks,
            "scope_confidence_floors": {
                scope.value: floor for scope, floor in self.scope_confidence_floors.items()
            },
        }


@dataclass
class SemanticConfig:
    """External language-model scorer from the [semantic] section."""

    endpoint: str
    model: str = "gpt-4o-mini"
    api_key: str | None = None


@dataclass
class NotificationConfig:
    """Approver notification channel from the [notifications] section."""

    webhook_url: str | None = None
    operator_id: str = "operations"


@dataclass
class GatewayConfig:
    """Top-level configuration for one action gate deployment."""

    name: str
    policy: ActionRelevanceConfig = field(default_factory=ActionRelevanceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    database_dsn: str | None = None
    semantic: SemanticConfig | None = None
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    source_path: Path | None = None


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


# ---------------------------------------------------------------------------
# Section parsers
# ---------------------------------------------------------------------------


def _parse_enum(enum_cls: type[enum.StrEnum], raw: Any, field_name: str) -> Any:
    try:
        return enum_cls(str(raw).lower())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ConfigError(
            f"Invalid policy.{field_name}: {raw!r}. Expected one of: {allowed}"
        ) from exc


def _parse_fraction(raw: Any, field_name: str) -> float:
    if isinstance(raw, bool) or not isinstance(raw, int | float):
        raise ConfigError(f"policy.{field_name} must be a number, got {raw!r}")
    value = float(raw)
    if not 0.0 <= value <= 1.0:
        raise ConfigError(f"policy.{field_name} must be between 0 and 1, got {value}")
    return value


def _parse_positive(raw: Any, field_name: str, *, integer: bool = False) -> Any:
    if isinstance(raw, bool) or not isinstance(raw, int | float):
        raise ConfigError(f"policy.{field_name} must be a number, got {raw!r}")
    if raw <= 0:
        raise ConfigError(f"policy.{field_name} must be greater than 0, got {raw}")
    if integer:
        if int(raw) != raw:
            raise ConfigError(f"policy.{field_name} must be a whole number, got {raw}")
        return int(raw)
    return float(raw)


def _parse_bool(raw: Any, field_name: str) -> bool:
    if not isinstance(raw, bool):
        raise ConfigError(f"policy.{field_name} must be true or false, got {raw!r}")
    return raw


def _parse_action_types(raw: Any, field_name: str) -> frozenset[str]:
    if not isinstance(raw, list | tuple | set | frozenset):
        raise ConfigError(f"policy.{field_name} must be a list of action types")
    types: set[str] = set()
    for item in raw:
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"policy.{field_name} entries must be non-empty strings")
        types.add(item.strip())
    return frozenset(types)


def parse_policy_config(raw: Mapping[str, Any] | None) -> ActionRelevanceConfig:
    """Parse the [policy] section into an ActionRelevanceConfig.

    Missing keys take their defaults; present keys are validated.

    Raises
    ------
    ConfigError
        If any value is of the wrong kind or out of range.
    """
    if raw is None:
        return ActionRelevanceConfig()
    if not isinstance(raw, Mapping):
        raise ConfigError("[policy] must be a table")

    defaults = ActionRelevanceConfig()
    kwargs: dict[str, Any] = {}

    if "check_timeout_seconds" in raw:
        kwargs["check_timeout_seconds"] = _parse_positive(
            raw["check_timeout_seconds"], "check_timeout_seconds"
        )
    if "notification_timeout_seconds" in raw:
        kwargs["notification_timeout_seconds"] = _parse_positive(
            raw["notification_timeout_seconds"], "notification_timeout_seconds"
        )
    for name in (
        "max_context_age_minutes",
        "user_approval_timeout_minutes",
        "execution_grace_minutes",
        "defer_minutes",
        "max_concurrent_checks",
    ):
        if name in raw:
            kwargs[name] = _parse_positive(raw[name], name, integer=True)
    for name in ("minimum_confidence", "user_approval_threshold"):
        if name in raw:
            kwargs[name] = _parse_fraction(raw[name], name)
    for name in (
        "semantic_validation_enabled",
        "rule_validation_enabled",
        "bulk_approval_enabled",
    ):
        if name in raw:
            kwargs[name] = _parse_bool(raw[name], name)

    if "default_action_on_uncertainty" in raw:
        kwargs["default_action_on_uncertainty"] = _parse_enum(
            UncertaintyAction, raw["default_action_on_uncertainty"], "default_action_on_uncertainty"
        )
    if "override_mode" in raw:
        kwargs["override_mode"] = _parse_enum(OverrideMode, raw["override_mode"], "override_mode")

    for name in ("always_require_approval_actions", "never_require_approval_actions"):
        if name in raw:
            kwargs[name] = _parse_action_types(raw[name], name)

    if "scope_confidence_floors" in raw:
        floors_raw = raw["scope_confidence_floors"]
        if not isinstance(floors_raw, Mapping):
            raise ConfigError("policy.scope_confidence_floors must be a table")
        floors = dict(defaults.scope_confidence_floors)
        for scope_raw, floor_raw in floors_raw.items():
            scope = _parse_enum(ActionScope, scope_raw, "scope_confidence_floors")
            floors[scope] = _parse_fraction(floor_raw, f"scope_confidence_floors.{scope.value}")
        kwargs["scope_confidence_floors"] = floors

    unknown = set(raw) - set(defaults.to_dict())
    if unknown:
        logger.warning("Ignoring unknown policy keys: %s", ", ".join(sorted(unknown)))

    return ActionRelevanceConfig(**kwargs)


def _parse_logging(raw: Any) -> LoggingConfig:
    if raw is None:
        return LoggingConfig()
    if not isinstance(raw, Mapping):
        raise ConfigError("[logging] must be a table")
    level = str(raw.get("level", "INFO")).upper()
    if level not in logging.getLevelNamesMapping():
        raise ConfigError(f"Invalid logging.level: {level!r}")
    fmt = str(raw.get("format", "text")).lower()
    if fmt not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {fmt!r}. Expected 'text' or 'json'")
    log_file = raw.get("log_file")
    return LoggingConfig(level=level, format=fmt, log_file=str(log_file) if log_file else None)


def _parse_semantic(raw: Any) -> SemanticConfig | None:
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise ConfigError("[semantic] must be a table")
    endpoint = raw.get("endpoint")
    if not isinstance(endpoint, str) or not endpoint.strip():
        raise ConfigError("Missing required field: semantic.endpoint")
    return SemanticConfig(
        endpoint=endpoint.strip(),
        model=str(raw.get("model", "gpt-4o-mini")),
        api_key=raw.get("api_key") or None,
    )


def _parse_notifications(raw: Any) -> NotificationConfig:
    if raw is None:
        return NotificationConfig()
    if not isinstance(raw, Mapping):
        raise ConfigError("[notifications] must be a table")
    return NotificationConfig(
        webhook_url=raw.get("webhook_url") or None,
        operator_id=str(raw.get("operator_id", "operations")),
    )


def parse_config(data: Mapping[str, Any], source_path: Path | None = None) -> GatewayConfig:
    """Build a GatewayConfig from an already-decoded TOML document."""
    data = resolve_env_vars(dict(data))

    gateway_section = data.get("gateway")
    if not isinstance(gateway_section, Mapping):
        raise ConfigError("Missing [gateway] section in config")

    name = gateway_section.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError("Missing required field: gateway.name")

    dsn = gateway_section.get("database_dsn")
    if dsn is not None and (not isinstance(dsn, str) or not dsn.strip()):
        raise ConfigError("gateway.database_dsn must be a non-empty string when set")

    return GatewayConfig(
        name=name.strip(),
        policy=parse_policy_config(data.get("policy")),
        logging=_parse_logging(data.get("logging")),
        database_dsn=dsn,
        semantic=_parse_semantic(data.get("semantic")),
        notifications=_parse_notifications(data.get("notifications")),
        source_path=source_path,
    )


def load_config(path: Path) -> GatewayConfig:
    """Load and validate a gateway TOML file.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_config(data, source_path=path)


# ---------------------------------------------------------------------------
# Policy store
# ---------------------------------------------------------------------------


class PolicyStore:
    """Holds the current ActionRelevanceConfig.

    Readers take one snapshot per request via :attr:`current`; writers swap
    the whole value, so an in-flight request never sees a half-updated policy.
    """

    def __init__(
        self,
        policy: ActionRelevanceConfig | None = None,
        source_path: Path | None = None,
    ) -> None:
        self._policy = policy or ActionRelevanceConfig()
        self._source_path = source_path

    @property
    def current(self) -> ActionRelevanceConfig:
        return self._policy

    def replace(self, policy: ActionRelevanceConfig) -> ActionRelevanceConfig:
        """Swap in *policy* and return the previous value."""
        previous = self._policy
        self._policy = policy
        logger.info(
            "Policy replaced (override_mode=%s, semantic=%s)",
            policy.override_mode.value,
            policy.semantic_validation_enabled,
        )
        return previous

    def update(self, raw: Mapping[str, Any]) -> ActionRelevanceConfig:
        """Validate *raw* as a full policy section and swap it in."""
        policy = parse_policy_config(raw)
        self.replace(policy)
        return policy

    def reload(self) -> ActionRelevanceConfig:
        """Re-read the policy from the source config file."""
        if self._source_path is None:
            raise ConfigError("PolicyStore has no source file to reload from")
        policy = load_config(self._source_path).policy
        self.replace(policy)
        return policy
