"""Shared flowforge configuration utilities.

Centralises reading of ~/.flowforge/configuration.json so that the CLI,
the pack registry and host applications share one implementation.

Example file:

    {
        "execution": {
            "error_mode": "skip-and-continue",
            "default_timeout": 30,
            "timeouts": {"HTTPRequest": 10},
            "retry": {"max_attempts": 3, "base_delay": 0.5},
            "retries": {"HTTPRequest": {"max_attempts": 5}},
            "max_subflow_depth": 10
        },
        "packs": {"state_file": "~/.flowforge/packs.json"}
    }
"""

import json
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from flowforge.graph.errors import ConfigurationError
from flowforge.graph.subflow import MAX_SUBFLOW_DEPTH
from flowforge.graph.types import ErrorMode, ExecutionOptions, RetryConfig, RetryOverride

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

FLOWFORGE_CONFIG_FILE = Path.home() / ".flowforge" / "configuration.json"


def get_config_path() -> Path:
    """Config file location; the FLOWFORGE_CONFIG environment variable wins."""
    override = os.environ.get("FLOWFORGE_CONFIG")
    if override:
        return Path(override).expanduser()
    return FLOWFORGE_CONFIG_FILE


def get_flowforge_config() -> dict[str, Any]:
    """Load flowforge configuration, or {} when absent or unreadable."""
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def _execution_section() -> dict[str, Any]:
    section = get_flowforge_config().get("execution", {})
    return section if isinstance(section, dict) else {}


def get_packs_state_path() -> Path:
    """Where enabled/disabled pack states are persisted."""
    packs = get_flowforge_config().get("packs", {})
    state_file = packs.get("state_file") if isinstance(packs, dict) else None
    if state_file:
        return Path(state_file).expanduser()
    return get_config_path().parent / "packs.json"


def _setting(key: str, convert: Callable[[Any], Any], default: Any) -> Any:
    """Read ``execution.<key>`` through ``convert``; bad values are configuration errors."""
    section = _execution_section()
    if key not in section:
        return convert(default)
    try:
        return convert(section[key])
    except (TypeError, ValueError, AttributeError) as e:
        raise ConfigurationError(
            f"Invalid execution.{key} in {get_config_path()}: {section[key]!r} ({e})"
        ) from e


def _default_error_mode() -> ErrorMode:
    return _setting("error_mode", ErrorMode, ErrorMode.STOP_ALL)


def _default_timeout() -> float:
    return _setting("default_timeout", float, 0.0)


def _default_timeouts() -> dict[str, float]:
    return _setting("timeouts", lambda v: {k: float(t) for k, t in v.items()}, {})


def _default_retry() -> RetryConfig:
    return _setting("retry", lambda v: RetryConfig(**v), {})


def _default_retries() -> dict[str, RetryOverride]:
    return _setting("retries", lambda v: {k: RetryOverride(**r) for k, r in v.items()}, {})


def _default_max_subflow_depth() -> int:
    return _setting("max_subflow_depth", int, MAX_SUBFLOW_DEPTH)


# ---------------------------------------------------------------------------
# EngineConfig
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine defaults loaded from the ``execution`` section of the config file.

    Raises ConfigurationError when a present value cannot be used.
    """

    error_mode: ErrorMode = field(default_factory=_default_error_mode)
    default_timeout: float = field(default_factory=_default_timeout)
    timeouts: dict[str, float] = field(default_factory=_default_timeouts)
    retry: RetryConfig = field(default_factory=_default_retry)
    retries: dict[str, RetryOverride] = field(default_factory=_default_retries)
    max_subflow_depth: int = field(default_factory=_default_max_subflow_depth)

    def to_options(self, **overrides: Any) -> ExecutionOptions:
        """Build ExecutionOptions from these defaults; keyword args win."""
        options: dict[str, Any] = {
            "error_mode": self.error_mode,
            "default_timeout": self.default_timeout,
            "timeouts": dict(self.timeouts),
            "default_retry": self.retry,
            "retries": dict(self.retries),
        }
        options.update(overrides)
        return ExecutionOptions(**options)
