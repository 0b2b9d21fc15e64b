"""
Configuration file loading.

Load and parse a project's ``config.yaml`` (plus ``config.{env}.yaml``), then
expand ``${VAR}`` and ``{env}`` placeholders.
"""

import os
import re
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import yaml

from deltaflow.exceptions import ConfigurationError

STATE_BACKENDS = ("memory", "duckdb")

_ENV_REFERENCE = re.compile(r"\$\{(?P<name>[^}]+)\}")


class Config:
    """Deltaflow configuration container with dict-like access."""

    def __init__(self, data: dict[str, Any], project_dir: Path | None = None):
        self.data = data
        self.project_dir = project_dir
        # Convenience properties for common config sections
        self.state = data.get("state") or {}
        self.execution = data.get("execution") or {}
        self.nodes = data.get("nodes") or {}

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation."""
        keys = key.split(".")
        value = self.data
        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default
        return value

    def __getitem__(self, key: str) -> Any:
        """Dict-like access: config['key'] or config['nested.key']."""
        if isinstance(key, str) and "." in key:
            return self.get(key)
        if key in self.data:
            value = self.data[key]
            # Return nested dicts as Config objects for chaining
            if isinstance(value, dict):
                return Config(value, self.project_dir)
            return value
        raise KeyError(f"Config key '{key}' not found")

    def __contains__(self, key: str) -> bool:
        """Check if key exists in config."""
        if isinstance(key, str) and "." in key:
            value = self.data
            for k in key.split("."):
                if not isinstance(value, dict) or k not in value:
                    return False
                value = value[k]
            return True
        return key in self.data

    def __iter__(self) -> Iterator[str]:
        """Iterate over top-level keys."""
        return iter(self.data)

    def keys(self):
        return self.data.keys()

    def values(self):
        return self.data.values()

    def items(self):
        return self.data.items()

    def validate(self) -> None:
        """Validate configuration structure and content."""
        if not isinstance(self.data, dict):
            raise ConfigurationError(
                f"Configuration must be a dictionary/mapping, got {type(self.data).__name__}"
            )

        errors = []
        for section in ("state", "execution", "retry", "logging", "nodes"):
            value = self.data.get(section)
            if value is not None and not isinstance(value, dict):
                errors.append(f"Configuration '{section}' must be a dictionary, got {type(value).__name__}")

        backend = self.get("state.backend")
        if backend is not None and backend not in STATE_BACKENDS:
            errors.append(f"Unknown state backend '{backend}' (expected one of: {', '.join(STATE_BACKENDS)})")

        nodes = self.data.get("nodes")
        if isinstance(nodes, dict):
            for name, spec in nodes.items():
                if spec is None:
                    continue
                if not isinstance(spec, dict):
                    errors.append(f"Node '{name}' must be a mapping, got {type(spec).__name__}")
                    continue
                depends_on = spec.get("depends_on")
                if depends_on is not None and not isinstance(depends_on, (list, str)):
                    errors.append(f"Node '{name}': 'depends_on' must be a list of node names")

        if errors:
            raise ConfigurationError("\n".join(errors), details={"errors": errors})


def load_config(project_path: Path, env: str | None = None) -> Config:
    """
    Load Deltaflow configuration.

    Load config.yaml and config.{env}.yaml, merge with environment variables.

    Args:
        project_path: Path to project root
        env: Environment name (dev, staging, prod)

    Returns:
        Config instance with merged configuration
    """
    project_path = Path(project_path)
    base_config_path = project_path / "config.yaml"
    if not base_config_path.is_file():
        raise ConfigurationError(
            f"Configuration file not found: {base_config_path}\n"
            f"  Suggestion: Create a config.yaml file in your project root",
            details={"path": str(base_config_path)},
        )

    config_data = _read_yaml(base_config_path)

    if env:
        env_config_path = project_path / f"config.{env}.yaml"
        if env_config_path.exists():
            # Merge (env overrides base)
            _merge_dict(config_data, _read_yaml(env_config_path))

    config_data = resolve_config(config_data, env or "dev")

    config = Config(config_data, project_dir=project_path)
    config.validate()
    return config


def resolve_config(config_data: dict[str, Any], env: str = "dev") -> dict[str, Any]:
    """
    Expand ``${VAR}`` from the process environment and ``{env}`` with the environment name.

    References to unset variables stay as written.
    """
    return _substitute(config_data, env)


def _substitute(value: Any, env: str) -> Any:
    if isinstance(value, str):
        expanded = _ENV_REFERENCE.sub(lambda m: os.environ.get(m["name"], m[0]), value)
        return expanded.replace("{env}", env)
    if isinstance(value, dict):
        return {key: _substitute(item, env) for key, item in value.items()}
    if isinstance(value, list):
        return [_substitute(item, env) for item in value]
    return value


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        if mark is not None:
            raise ConfigurationError(
                f"Error parsing {path.name} at line {mark.line + 1}, column {mark.column + 1}:\n"
                f"  {e}\n"
                f"  Suggestion: Check YAML syntax, ensure proper indentation and quotes",
                details={"path": str(path), "line": mark.line + 1, "column": mark.column + 1},
            ) from e
        raise ConfigurationError(f"Error parsing {path.name}: {e}", details={"path": str(path)}) from e
    except PermissionError as e:
        raise ConfigurationError(
            f"Permission denied reading {path}: {e}", details={"path": str(path)}
        ) from e

    if not isinstance(data, dict):
        raise ConfigurationError(
            f"{path.name} must contain a mapping at the top level, got {type(data).__name__}",
            details={"path": str(path)},
        )
    return data


def _merge_dict(base: dict, override: dict):
    """Recursively merge override into base."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _merge_dict(base[key], value)
        else:
            base[key] = value
