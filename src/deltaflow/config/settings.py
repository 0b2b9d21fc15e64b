"""
Typed views over configuration sections used by the execution core.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from deltaflow.config.loader import Config
from deltaflow.exceptions import ConfigurationError

if TYPE_CHECKING:
    from deltaflow.core.retry.policy import RetryPolicy

DEFAULT_STATE_PATH = ".deltaflow/state.duckdb"


@dataclass
class ExecutionSettings:
    """Configuration for execution settings."""

    max_concurrency: int = 4
    action_timeout: float | None = None
    skip_unchanged: bool = True

    def __post_init__(self):
        if self.max_concurrency < 1:
            raise ConfigurationError("execution.max_concurrency must be >= 1")
        if self.action_timeout is not None and self.action_timeout <= 0:
            raise ConfigurationError("execution.action_timeout must be > 0")


@dataclass
class StateSettings:
    """Where the persisted state lives."""

    backend: str = "duckdb"
    path: str = DEFAULT_STATE_PATH

    def resolve_path(self, project_dir: Path | None) -> str:
        """
        Resolve a relative database path against the project directory.

        Raises:
            ConfigurationError: the path is relative and there is no project directory
        """
        if self.path == ":memory:":
            return self.path
        path = Path(self.path)
        if path.is_absolute():
            return str(path)
        if project_dir is None:
            raise ConfigurationError(
                f"state.path '{self.path}' is relative but no project directory was given; "
                "pass project_dir, use an absolute path or the memory backend"
            )
        return str(Path(project_dir) / path)


def _section(config: Config | dict[str, Any], name: str) -> dict[str, Any]:
    data = config.data if isinstance(config, Config) else config
    return data.get(name) or {}


def execution_settings_from_config(config: Config | dict[str, Any]) -> ExecutionSettings:
    """Build ExecutionSettings from the ``execution`` section."""
    section = _section(config, "execution")
    timeout = section.get("action_timeout")
    return ExecutionSettings(
        max_concurrency=int(section.get("max_concurrency", ExecutionSettings.max_concurrency)),
        action_timeout=float(timeout) if timeout is not None else None,
        skip_unchanged=bool(section.get("skip_unchanged", ExecutionSettings.skip_unchanged)),
    )


def state_settings_from_config(config: Config | dict[str, Any]) -> StateSettings:
    """Build StateSettings from the ``state`` section."""
    section = _section(config, "state")
    return StateSettings(
        backend=section.get("backend", StateSettings.backend),
        path=str(section.get("path", DEFAULT_STATE_PATH)),
    )


def retry_policy_from_config(config: Config | dict[str, Any]) -> "RetryPolicy":
    """Build a RetryPolicy from the ``retry`` section (defaults when absent)."""
    from deltaflow.core.retry.policy import DEFAULT_RETRY_POLICY, RetryPolicy

    section = _section(config, "retry")
    if not section:
        return DEFAULT_RETRY_POLICY
    try:
        return RetryPolicy(
            max_attempts=int(section.get("max_attempts", DEFAULT_RETRY_POLICY.max_attempts)),
            initial_delay=float(section.get("initial_delay", DEFAULT_RETRY_POLICY.initial_delay)),
            max_delay=float(section.get("max_delay", DEFAULT_RETRY_POLICY.max_delay)),
            exponential_base=float(section.get("exponential_base", DEFAULT_RETRY_POLICY.exponential_base)),
            jitter=bool(section.get("jitter", DEFAULT_RETRY_POLICY.jitter)),
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid retry configuration: {e}") from e
