"""Cascade engine configuration.

Values resolve with priority: explicit argument > PROMPTCASCADE_* environment
variable > YAML config file > dataclass default.

Example:
    >>> config = load_config("promptcascade.yaml", max_retries=5)
    >>> config.max_rate_limit_waits
    12
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "PROMPTCASCADE_"
ENV_CONFIG_FILE = "PROMPTCASCADE_CONFIG"
DEFAULT_CONFIG_FILE = "promptcascade.yaml"

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


@dataclass
class CascadeConfig:
    """Tunables for one cascade executor.

    Attributes:
        max_retries: Failed attempts per node before asking the user what to do.
        max_rate_limit_waits: Rate-limit backoffs per node before a hard failure.
        rate_limit_margin_s: Added to every hint-derived rate-limit delay.
        bare_rate_limit_delay_s: Delay for a 429 that carries no retry hint.
        pause_poll_interval_s: How often a paused run re-checks its flags.
        background_timeout_s: Upper bound for a background (long_running) wait.
        background_poll_interval_s: Poll backstop interval for background waits.
        cancel_check_interval_s: How often waits re-check the cancel flag.
        task_timeout_s: Upper bound for an external agentic task.
        task_poll_interval_s: Poll backstop interval for external tasks.
        max_auto_cascade_depth: Depth at which auto-cascade recursion stops.
        default_max_questions: Question-interrupt cap when a node sets none.
        fallback_message: Message used when a node has no prompt text.
        fallback_setting_key: Storage setting overriding fallback_message.
        default_provider: Provider id for models with no route.
        provider_routes: Model-name prefix to provider id.
        skip_all_previews: Never ask before creating children.
        backend_url: Base URL of the functions backend (HTTP collaborators).
        backend_token: Bearer token for the functions backend.
    """

    max_retries: int = 3
    max_rate_limit_waits: int = 12
    rate_limit_margin_s: float = 0.25
    bare_rate_limit_delay_s: float = 2.5
    pause_poll_interval_s: float = 0.2
    background_timeout_s: float = 600.0
    background_poll_interval_s: float = 10.0
    cancel_check_interval_s: float = 1.0
    task_timeout_s: float = 1800.0
    task_poll_interval_s: float = 2.0
    max_auto_cascade_depth: int = 99
    default_max_questions: int = 10
    fallback_message: str = "Execute this prompt"
    fallback_setting_key: str = "cascade_empty_prompt_fallback"
    default_provider: str = "openai"
    provider_routes: dict[str, str] = field(default_factory=lambda: {"manus": "manus"})
    skip_all_previews: bool = False
    backend_url: str | None = None
    backend_token: str | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.max_rate_limit_waits < 0:
            raise ValueError("max_rate_limit_waits cannot be negative")
        if self.max_auto_cascade_depth < 0:
            raise ValueError("max_auto_cascade_depth cannot be negative")
        if self.default_max_questions < 0:
            raise ValueError("default_max_questions cannot be negative")
        for name in (
            "rate_limit_margin_s",
            "bare_rate_limit_delay_s",
            "pause_poll_interval_s",
            "cancel_check_interval_s",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")
        for name in (
            "background_timeout_s",
            "background_poll_interval_s",
            "task_timeout_s",
            "task_poll_interval_s",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")

    def provider_for_model(self, model: str | None) -> str:
        """Resolve the provider id for a model selector."""
        if model:
            lowered = model.lower()
            for prefix, provider in self.provider_routes.items():
                if lowered.startswith(prefix.lower()):
                    return provider
        return self.default_provider


def _coerce(raw: Any, target: Any, name: str) -> Any:
    """Convert a raw env/file value to the dataclass field type."""
    if raw is None:
        return None
    if target in ("int", int):
        return int(raw)
    if target in ("float", float):
        return float(raw)
    if target in ("bool", bool):
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in _TRUE_VALUES:
            return True
        if text in _FALSE_VALUES:
            return False
        raise ValueError(f"Invalid boolean for {name}: {raw!r}")
    if str(target).startswith("dict"):
        if not isinstance(raw, dict):
            raise ValueError(f"{name} must be a mapping")
        return {str(k): str(v) for k, v in raw.items()}
    return str(raw)


def _read_config_file(path: str | Path | None) -> dict[str, Any]:
    config_path = path or os.environ.get(ENV_CONFIG_FILE)
    if not config_path:
        default = Path(DEFAULT_CONFIG_FILE)
        if not default.exists():
            return {}
        config_path = default

    content = Path(config_path).read_text()
    data = yaml.safe_load(content) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")
    # Allow a top-level "cascade:" section
    section = data.get("cascade", data)
    logger.debug("config_file_loaded: path=%s, keys=%s", config_path, sorted(section))
    return section


def load_config(path: str | Path | None = None, **overrides: Any) -> CascadeConfig:
    """Build a CascadeConfig from arguments, environment and an optional YAML file.

    Args:
        path: YAML file path. Falls back to PROMPTCASCADE_CONFIG, then
            ./promptcascade.yaml when present.
        **overrides: Explicit values; ``None`` means "not given".

    Returns:
        Validated CascadeConfig.

    Raises:
        ValueError: Unknown keys or invalid values.
        FileNotFoundError: An explicit config path does not exist.
    """
    file_config = _read_config_file(path)
    fields = {f.name: f for f in dataclasses.fields(CascadeConfig)}

    unknown = (set(file_config) | set(overrides)) - set(fields)
    if unknown:
        raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")

    values: dict[str, Any] = {}
    for name, f in fields.items():
        if overrides.get(name) is not None:
            values[name] = overrides[name]
            continue
        env_val = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
        if env_val and not str(f.type).startswith("dict"):
            values[name] = _coerce(env_val, f.type, name)
            continue
        if name in file_config:
            values[name] = _coerce(file_config[name], f.type, name)

    return CascadeConfig(**values)
