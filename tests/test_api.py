"""
Tests for the programmatic API (run, resume, create_state_store).
"""

import asyncio
import logging
from pathlib import Path

import pytest
import yaml

from deltaflow import resume, run
from deltaflow.config import Config
from deltaflow.core.api import create_coordinator, create_state_store
from deltaflow.core.engine import Failure, FunctionEngine
from deltaflow.core.pipeline import PipelineStatus
from deltaflow.core.state import DuckDBStateStore, MemoryStateStore
from deltaflow.exceptions import ConfigurationError, CyclicDependencyError
from deltaflow.testing import ScriptedEngine, artifact_paths
from deltaflow.utils.async_utils import dual
from deltaflow.utils.logging import ROOT_LOGGER

PROJECT_CONFIG = {
    "state": {"backend": "duckdb", "path": "state/deltaflow.duckdb"},
    "execution": {"max_concurrency": 2},
    "retry": {"max_attempts": 0},
    "logging": {"console_enabled": False, "file": "logs/deltaflow.log"},
    "nodes": {
        "raw": {},
        "staged": {"depends_on": ["raw"], "config": {"sql": "SELECT * FROM raw"}},
        "report": {"depends_on": "staged"},
    },
}


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def project(tmp_path):
    (tmp_path / "config.yaml").write_text(yaml.safe_dump(PROJECT_CONFIG))
    return tmp_path


class TestRun:
    """run() in sync and async contexts."""

    def test_sync_run_from_project_dir(self, project):
        engine = ScriptedEngine(default=artifact_paths("x"))
        result = run(engine, project_dir=project)

        assert result.status == PipelineStatus.COMPLETED
        assert result.completed == ["raw", "staged", "report"]
        assert (project / "state" / "deltaflow.duckdb").exists()
        assert engine.calls("staged")[0].config == {"sql": "SELECT * FROM raw"}

    def test_state_persists_between_runs(self, project):
        engine = ScriptedEngine(default=artifact_paths("x"))
        first = run(engine, project_dir=project)
        second = run(engine, project_dir=project, targets=["staged"])

        # Declarations unchanged: same graph, new pipeline
        assert second.graph_id == first.graph_id
        assert second.pipeline_id != first.pipeline_id
        assert [a.node_name for a in second.actions] == ["raw", "staged"]

        store = DuckDBStateStore(project / "state" / "deltaflow.duckdb")
        try:
            assert len(store.list_pipelines()) == 2
            assert len(store.deltas_for_node("raw")) == 2
        finally:
            store.close()

    def test_changed_declarations_create_new_graph(self, project):
        engine = ScriptedEngine(default=artifact_paths("x"))
        first = run(engine, project_dir=project)

        changed = dict(PROJECT_CONFIG, nodes=dict(PROJECT_CONFIG["nodes"], audit={"depends_on": ["report"]}))
        (project / "config.yaml").write_text(yaml.safe_dump(changed))
        second = run(engine, project_dir=project)

        assert second.graph_id != first.graph_id
        assert second.completed == ["raw", "staged", "report", "audit"]

    def test_env_overlay(self, project, monkeypatch):
        (project / "config.staging.yaml").write_text(
            yaml.safe_dump({"nodes": {"audit": {"depends_on": ["report"]}}})
        )
        monkeypatch.setenv("DELTAFLOW_ENV", "staging")
        result = run(ScriptedEngine(), project_dir=project)
        assert "audit" in result.completed

    def test_log_file_written(self, project):
        run(ScriptedEngine(), project_dir=project)
        log_text = (project / "logs" / "deltaflow.log").read_text()
        assert "Planned pipeline" in log_text

    def test_failed_run_returns_result(self, project):
        engine = ScriptedEngine({"staged": [Failure.permanent("bad input")]})
        result = run(engine, project_dir=project)
        assert result.status == PipelineStatus.FAILED
        assert result.failed == ["staged", "report"]

    @pytest.mark.asyncio
    async def test_async_run_with_config_dict(self):
        store = MemoryStateStore()
        config = {"nodes": {"raw": {}, "staged": {"depends_on": ["raw"]}}}
        result = await run(ScriptedEngine(), config=config, store=store, configure_logging=False)
        assert result.succeeded
        # Caller-owned store is left open
        assert store.get_pipeline(result.pipeline_id).status == PipelineStatus.COMPLETED

    def test_function_engine(self):
        seen = []

        def load(request):
            seen.append((request.node_name, request.mode))
            return {"insert": f"{request.node_name}.parquet"}

        engine = FunctionEngine(default=load)
        try:
            config = {"state": {"backend": "memory"}, "nodes": {"raw": {}, "staged": {"depends_on": ["raw"]}}}
            result = run(engine, config=config, configure_logging=False)
        finally:
            engine.close()
        assert result.succeeded
        assert [name for name, _ in seen] == ["raw", "staged"]

    def test_cyclic_config_rejected(self):
        config = {
            "state": {"backend": "memory"},
            "nodes": {"a": {"depends_on": ["b"]}, "b": {"depends_on": ["a"]}},
        }
        with pytest.raises(CyclicDependencyError):
            run(ScriptedEngine(), config=config, configure_logging=False)

    def test_requires_project_dir_or_config(self):
        with pytest.raises(ConfigurationError, match="project_dir or config"):
            run(ScriptedEngine())

    def test_invalid_config_dict(self):
        with pytest.raises(ConfigurationError):
            run(ScriptedEngine(), config={"state": {"backend": "postgres"}}, configure_logging=False)

    def test_config_dict_defaults_need_project_dir(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(ConfigurationError, match="logging.file"):
            run(ScriptedEngine(), config={"nodes": {"raw": {}}})
        assert list(tmp_path.iterdir()) == []

    def test_relative_state_path_needs_project_dir(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = {"logging": {"file_enabled": False, "console_enabled": False}, "nodes": {"raw": {}}}
        engine = ScriptedEngine()
        with pytest.raises(ConfigurationError, match="state.path"):
            run(engine, config=config)
        assert engine.requests == []
        assert list(tmp_path.iterdir()) == []

    def test_config_dict_with_absolute_paths(self, tmp_path, monkeypatch):
        workdir = tmp_path / "cwd"
        workdir.mkdir()
        monkeypatch.chdir(workdir)
        config = {
            "state": {"path": str(tmp_path / "state.duckdb")},
            "logging": {"console_enabled": False, "file": str(tmp_path / "run.log")},
            "nodes": {"raw": {}},
        }
        assert run(ScriptedEngine(), config=config).succeeded
        assert (tmp_path / "state.duckdb").exists()
        assert (tmp_path / "run.log").exists()
        assert list(workdir.iterdir()) == []

    def test_config_dict_with_project_dir(self, tmp_path):
        config = {"logging": {"console_enabled": False}, "nodes": {"raw": {}}}
        assert run(ScriptedEngine(), project_dir=tmp_path, config=config).succeeded
        assert (tmp_path / ".deltaflow" / "state.duckdb").exists()
        assert (tmp_path / "logs" / "deltaflow.log").exists()


class TestResume:
    """resume() picks up existing pipelines."""

    def test_resume_finished_pipeline(self, project):
        engine = ScriptedEngine()
        first = run(engine, project_dir=project)
        again = resume(engine, first.pipeline_id, project_dir=project)

        assert again.pipeline_id == first.pipeline_id
        assert again.executed == []
        assert again.status == first.status
        assert len(engine.requests) == 3

    @pytest.mark.asyncio
    async def test_resume_async(self):
        store = MemoryStateStore()
        config = {"nodes": {"raw": {}}}
        first = await run(ScriptedEngine(), config=config, store=store, configure_logging=False)
        again = await resume(ScriptedEngine(), first.pipeline_id, config=config, store=store, configure_logging=False)
        assert again.executed == []


class TestFactories:
    """Store and coordinator construction from config."""

    def test_memory_backend(self):
        assert isinstance(create_state_store({"state": {"backend": "memory"}}), MemoryStateStore)

    def test_duckdb_relative_path(self, tmp_path):
        store = create_state_store({"state": {"path": "db/state.duckdb"}}, project_dir=tmp_path)
        assert isinstance(store, DuckDBStateStore)
        assert Path(store.path) == tmp_path / "db" / "state.duckdb"

    def test_project_dir_from_config(self, tmp_path):
        store = create_state_store(Config({"state": {"path": "x.duckdb"}}, project_dir=tmp_path))
        assert Path(store.path) == tmp_path / "x.duckdb"

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError, match="Unknown state backend"):
            create_state_store({"state": {"backend": "sqlite"}})

    def test_coordinator_settings(self):
        config = Config({"execution": {"max_concurrency": 7, "action_timeout": 30}, "retry": {"max_attempts": 1}})
        coordinator = create_coordinator(config, MemoryStateStore(), ScriptedEngine())
        assert coordinator.settings.max_concurrency == 7
        assert coordinator.settings.action_timeout == 30.0
        assert coordinator.retry_policy.max_attempts == 1


class TestDual:
    """@dual entry points from sync and async callers."""

    def test_rejects_sync_function(self):
        with pytest.raises(TypeError, match="async function"):
            dual(lambda: None)

    def test_sync_call_runs_to_completion(self):
        @dual
        async def add(a, b):
            return a + b

        assert add(2, 3) == 5

    @pytest.mark.asyncio
    async def test_async_call_returns_awaitable(self):
        @dual
        async def add(a, b):
            return a + b

        pending = add(2, 3)
        assert asyncio.iscoroutine(pending)
        assert await pending == 5
