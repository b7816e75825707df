"""
Configuration management and loading.

Handles plan limits, heartbeat timeout, retention windows, guardrail and
suggestion settings.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import yaml

from copilot_guard.core.guardrails import MAX_TEXT_LENGTH
from copilot_guard.core.retention import RetentionPolicy
from copilot_guard.core.session import HEARTBEAT_TIMEOUT_MS


@dataclass(frozen=True)
class QuotaConfig:
    """Plan limits for the three copilot minute windows."""
    monthly_minutes: int = 600
    daily_minutes: int = 120
    session_minutes: int = 60

    def __post_init__(self):
        """Validate limits are non-negative whole minutes."""
        for name in ("monthly_minutes", "daily_minutes", "session_minutes"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"{name} must be an integer >= 0")


@dataclass(frozen=True)
class SessionConfig:
    heartbeat_timeout_ms: int = HEARTBEAT_TIMEOUT_MS

    def __post_init__(self):
        if isinstance(self.heartbeat_timeout_ms, bool) or not isinstance(self.heartbeat_timeout_ms, int) \
                or self.heartbeat_timeout_ms <= 0:
            raise ValueError("heartbeat_timeout_ms must be an integer > 0")


@dataclass(frozen=True)
class GuardrailSettings:
    max_length: int = MAX_TEXT_LENGTH

    def __post_init__(self):
        if isinstance(self.max_length, bool) or not isinstance(self.max_length, int) or self.max_length <= 0:
            raise ValueError("max_length must be an integer > 0")


@dataclass(frozen=True)
class SuggestionConfig:
    """Inference settings for automatic suggestions."""
    model: str = "gpt-4o-mini"
    temperature: float = 0.3
    context_events: int = 16

    def __post_init__(self):
        if not isinstance(self.model, str) or not self.model.strip():
            raise ValueError("model must be a non-empty string")
        if isinstance(self.temperature, bool) or not isinstance(self.temperature, (int, float)) \
                or not 0 <= self.temperature <= 2:
            raise ValueError("temperature must be between 0 and 2")
        if isinstance(self.context_events, bool) or not isinstance(self.context_events, int) \
                or self.context_events <= 0:
            raise ValueError("context_events must be an integer > 0")


@dataclass(frozen=True)
class CopilotConfig:
    """Complete copilot engine configuration."""
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    guardrail: GuardrailSettings = field(default_factory=GuardrailSettings)
    suggestion: SuggestionConfig = field(default_factory=SuggestionConfig)

    @classmethod
    def default(cls) -> "CopilotConfig":
        return cls()


_SECTIONS = {
    "quota": QuotaConfig,
    "session": SessionConfig,
    "retention": RetentionPolicy,
    "guardrail": GuardrailSettings,
    "suggestion": SuggestionConfig,
}


def load_copilot_config(path: str) -> CopilotConfig:
    """Load and validate copilot configuration from YAML file.

    Strict validation ensures no silent misconfigurations: unknown keys are
    rejected instead of ignored. Omitted sections and keys keep their defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated CopilotConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Copilot config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return CopilotConfig.default()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTIONS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {
        name: _parse_section(name, raw_config[name])
        for name in _SECTIONS
        if name in raw_config
    }
    return CopilotConfig(**sections)


def _parse_section(name: str, data: Any):
    """Parse one configuration section into its dataclass.

    Args:
        name: Section name, also used in error messages
        data: Raw section data

    Returns:
        Validated section object

    Raises:
        ValueError: If the section is not a dictionary, has unknown keys or
            fails validation
    """
    section_cls = _SECTIONS[name]
    if data is None:
        return section_cls()
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    allowed_keys = set(section_cls.__dataclass_fields__)
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")

    try:
        return section_cls(**data)
    except ValueError as e:
        raise ValueError(f"Invalid {name} configuration: {e}")


def config_to_dict(config: CopilotConfig) -> Dict[str, Dict[str, Any]]:
    """Flatten a configuration for display."""
    return {
        name: dict(vars(getattr(config, name)))
        for name in _SECTIONS
    }
