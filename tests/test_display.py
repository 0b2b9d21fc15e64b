"""
Tests for Rich rendering of run results.
"""

from datetime import datetime

from rich.console import Console

from deltaflow.core.coordinator import ActionOutcome, RunResult
from deltaflow.core.delta import Delta
from deltaflow.core.engine import ExecutionMode
from deltaflow.core.pipeline import ActionStatus, PipelineStatus
from deltaflow.utils.display import print_run_result

NOW = datetime(2024, 1, 1, 12, 0, 0)


def _render(result):
    console = Console(record=True, width=250, color_system=None)
    print_run_result(result, console)
    return console.export_text()


def _failed_result():
    return RunResult(
        pipeline_id=3,
        graph_id=1,
        status=PipelineStatus.FAILED,
        actions=[
            ActionOutcome(
                1, "raw", 0, ActionStatus.COMPLETED, attempts=1, mode=ExecutionMode.FULL,
                delta=Delta(1, 1, "raw/insert.parquet", "", "raw/delete.parquet", NOW),
            ),
            ActionOutcome(
                2, "staged", 1, ActionStatus.FAILED, attempts=3,
                error_message="warehouse busy\nretry later", root_causes=("staged",),
            ),
            ActionOutcome(
                3, "report", 2, ActionStatus.FAILED,
                error_message="Upstream task staged failed", root_causes=("staged",),
            ),
        ],
    )


class TestRenderRunResult:
    """Rendering tables and error panels."""

    def test_successful_run(self):
        result = RunResult(
            pipeline_id=1,
            graph_id=1,
            status=PipelineStatus.COMPLETED,
            actions=[
                ActionOutcome(1, "raw", 0, ActionStatus.COMPLETED, attempts=1, delta=Delta(1, 1, "", "", "", NOW)),
                ActionOutcome(2, "staged", 1, ActionStatus.SKIPPED, skipped_reason="unchanged"),
            ],
        )
        text = _render(result)
        assert "Pipeline 1" in text
        assert "COMPLETED" in text
        assert "no changes" in text
        assert "SKIPPED (unchanged)" in text
        assert "Errors" not in text

    def test_failed_run_shows_root_causes(self):
        text = _render(_failed_result())
        assert "Pipeline 3" in text
        assert "Errors" in text
        assert "✗ staged" in text
        assert "downstream failed: report" in text
        assert "+ins" in text
        assert "-del" in text
        assert "full" in text

    def test_error_preview_uses_first_line(self):
        text = _render(_failed_result())
        table_part = text.split("Errors")[0]
        assert "warehouse busy" in table_part
        assert "retry later" not in table_part

    def test_long_errors_truncated(self):
        result = _failed_result()
        result.actions[1].error_message = "x" * 200
        assert "x" * 77 + "..." in _render(result)
