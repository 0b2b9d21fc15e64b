"""
Programmatic API for Deltaflow.

Every entry point takes the project directory or configuration explicitly;
nothing depends on the current working directory.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from deltaflow.config import (
    Config,
    execution_settings_from_config,
    load_config,
    retry_policy_from_config,
    state_settings_from_config,
)
from deltaflow.core.coordinator import RunCoordinator, RunResult
from deltaflow.core.engine import TransformationEngine
from deltaflow.core.graph import declarations_from_config
from deltaflow.core.graph_store import GraphStore
from deltaflow.core.state import DuckDBStateStore, MemoryStateStore, StateStore
from deltaflow.exceptions import ConfigurationError
from deltaflow.utils.async_utils import dual
from deltaflow.utils.logging import get_logger, setup_logging_from_config

logger = get_logger("deltaflow.api")

ENV_VAR = "DELTAFLOW_ENV"


def _resolve_config(
    project_dir: Path | str | None, config: Config | dict[str, Any] | None, env: str | None
) -> Config:
    if config is not None:
        if isinstance(config, Config):
            return config
        resolved = Config(config, Path(project_dir) if project_dir is not None else None)
        resolved.validate()
        return resolved
    if project_dir is None:
        raise ConfigurationError("Either project_dir or config must be given")
    return load_config(Path(project_dir), env=env or os.environ.get(ENV_VAR))


def create_state_store(config: Config | dict[str, Any], project_dir: Path | str | None = None) -> StateStore:
    """
    Open the state store named by the ``state`` config section.

    Relative database paths resolve against ``project_dir`` (or the
    config's own project directory).
    """
    settings = state_settings_from_config(config)
    if project_dir is None and isinstance(config, Config):
        project_dir = config.project_dir
    if settings.backend == "memory":
        return MemoryStateStore()
    if settings.backend == "duckdb":
        return DuckDBStateStore(settings.resolve_path(Path(project_dir) if project_dir is not None else None))
    raise ConfigurationError(f"Unknown state backend '{settings.backend}'")


def create_coordinator(config: Config, store: StateStore, engine: TransformationEngine) -> RunCoordinator:
    """RunCoordinator wired with the execution and retry settings of ``config``."""
    return RunCoordinator(
        store,
        engine,
        settings=execution_settings_from_config(config),
        retry_policy=retry_policy_from_config(config),
    )


@dual
async def run(
    engine: TransformationEngine,
    project_dir: Path | str | None = None,
    config: Config | dict[str, Any] | None = None,
    targets: list[str] | None = None,
    env: str | None = None,
    force: bool = False,
    store: StateStore | None = None,
    configure_logging: bool = True,
) -> RunResult:
    """
    Build (or reuse) the graph declared in the config and run a new pipeline.

    Works in both sync and async contexts.

    Args:
        engine: Transformation engine that materializes nodes
        project_dir: Project directory holding config.yaml
        config: Configuration to use instead of loading config.yaml
        targets: Nodes to build (with their ancestors); all nodes when empty
        env: Environment name (default: DELTAFLOW_ENV or "dev")
        force: Re-run every planned action even if its inputs are unchanged
        store: State store to use instead of the configured one
        configure_logging: Apply the ``logging`` config section

    Returns:
        RunResult of the new pipeline

    Examples:
        # Sync usage
        result = run(engine, project_dir="my_project")

        # Async usage
        result = await run(engine, project_dir="my_project", targets=["report"])
    """
    cfg = _resolve_config(project_dir, config, env)
    project_path = Path(project_dir) if project_dir is not None else cfg.project_dir
    if configure_logging:
        setup_logging_from_config(cfg.data, project_path)

    own_store = store is None
    store = store or create_state_store(cfg, project_path)
    try:
        node_decls, edge_decls = declarations_from_config(cfg)
        graph = GraphStore(store).save_if_changed(node_decls, edge_decls)
        coordinator = create_coordinator(cfg, store, engine)
        pipeline = coordinator.create_pipeline(graph.id, targets=targets, force=force)
        return await coordinator.run_pipeline(pipeline.id)
    finally:
        if own_store:
            store.close()


@dual
async def resume(
    engine: TransformationEngine,
    pipeline_id: int,
    project_dir: Path | str | None = None,
    config: Config | dict[str, Any] | None = None,
    env: str | None = None,
    store: StateStore | None = None,
    configure_logging: bool = True,
) -> RunResult:
    """
    Resume an interrupted pipeline.

    COMPLETED and SKIPPED actions are left alone; PENDING actions and actions
    left RUNNING by a crash are run again.
    """
    cfg = _resolve_config(project_dir, config, env)
    project_path = Path(project_dir) if project_dir is not None else cfg.project_dir
    if configure_logging:
        setup_logging_from_config(cfg.data, project_path)

    own_store = store is None
    store = store or create_state_store(cfg, project_path)
    try:
        logger.info(f"Resuming pipeline {pipeline_id}")
        return await create_coordinator(cfg, store, engine).run_pipeline(pipeline_id)
    finally:
        if own_store:
            store.close()
