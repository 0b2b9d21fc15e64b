"""
Delta records and the Delta Ledger.

A Delta holds the insert/update/delete artifact paths produced by one
COMPLETED action. Deltas are append-only: the ledger never updates or
deletes one once written.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from deltaflow.core.pipeline import ActionStatus, PipelineAction
from deltaflow.exceptions import DeltaError
from deltaflow.utils.logging import get_logger

if TYPE_CHECKING:
    from deltaflow.core.state import StateStore

logger = get_logger("deltaflow.delta")


@dataclass(frozen=True)
class Delta:
    """Incremental change set of one completed action."""

    id: int
    action_id: int
    insert_path: str
    update_path: str
    delete_path: str
    created_at: datetime

    @property
    def is_empty(self) -> bool:
        """True when the action reported no changed rows of any kind."""
        return not (self.insert_path or self.update_path or self.delete_path)


class DeltaLedger:
    """Records deltas for completed actions and answers "what changed last"."""

    def __init__(self, store: StateStore):
        self.store = store

    def record_delta(self, action_id: int, insert_path: str = "", update_path: str = "", delete_path: str = "") -> Delta:
        """
        Record the delta of a COMPLETED action.

        Raises:
            NotFoundError: unknown action
            DeltaError: the action is not COMPLETED
            DeltaAlreadyRecordedError: the action already has a delta
        """
        action = self.store.get_action(action_id)
        if action.status != ActionStatus.COMPLETED:
            raise DeltaError(
                f"Cannot record a delta for action {action_id} in status {action.status}",
                details={"action_id": action_id, "status": str(action.status)},
            )
        delta = self.store.insert_delta(action_id, insert_path or "", update_path or "", delete_path or "")
        logger.debug(f"Recorded delta {delta.id} for action {action_id} ({action.table_name})")
        return delta

    def record_completion(
        self,
        action_id: int,
        completed_at: datetime,
        insert_path: str = "",
        update_path: str = "",
        delete_path: str = "",
    ) -> tuple[PipelineAction, Delta] | None:
        """
        Complete a RUNNING action and record its delta in the same store write.

        Returns None when the action was not RUNNING; nothing is written then.
        """
        written = self.store.complete_action_with_delta(
            action_id, completed_at, insert_path or "", update_path or "", delete_path or ""
        )
        if written is not None:
            action, delta = written
            logger.debug(f"Recorded delta {delta.id} for action {action_id} ({action.table_name})")
        return written

    def get_delta(self, action_id: int) -> Delta | None:
        """Delta of one action, if any."""
        return self.store.get_delta(action_id)

    def latest_delta(self, node_name: str) -> Delta | None:
        """Delta of the most recent COMPLETED action targeting ``node_name``."""
        action = self.store.latest_completed_action(node_name)
        if action is None:
            return None
        return self.store.get_delta(action.id)

    def history(self, node_name: str) -> list[Delta]:
        """Every delta recorded for ``node_name``, oldest first."""
        return self.store.deltas_for_node(node_name)
