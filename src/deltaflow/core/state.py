"""
State store for graphs, pipelines, actions and deltas.

``StateStore`` is the persisted-store contract the execution core relies on.
Every status transition is a single atomic compare-and-set, so a run that
dies half way can be resumed by re-reading the stored statuses.

Two implementations:

- ``MemoryStateStore``: dicts behind a lock, for tests and throwaway runs.
- ``DuckDBStateStore``: tables in a ``deltaflow`` schema of a DuckDB
  database, reached through ibis. Tables are created on first use.
"""

from __future__ import annotations

import dataclasses
import json
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import ibis

from deltaflow.core.delta import Delta
from deltaflow.core.graph import Edge, Graph, Node, NodeDecl
from deltaflow.core.pipeline import ActionStatus, Pipeline, PipelineAction, PipelineStatus
from deltaflow.exceptions import (
    DeltaAlreadyRecordedError,
    DeltaflowError,
    NotFoundError,
    StoreUnavailableError,
)
from deltaflow.utils.logging import get_logger

logger = get_logger("deltaflow.state")

SCHEMA_NAME = "deltaflow"

# Action columns a compare-and-set may write besides ``status``
ACTION_FIELDS = frozenset({"started_at", "completed_at", "error_message", "skipped_reason", "attempts"})

_UNSET: Any = object()


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (what TIMESTAMP columns hold)."""
    return datetime.now(UTC).replace(tzinfo=None)


def _check_action_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - ACTION_FIELDS
    if unknown:
        raise ValueError(f"Unknown action field(s): {', '.join(sorted(unknown))}")


class StateStore(ABC):
    """Persisted store contract used by the graph store, state machine and ledger."""

    # --- graphs ---

    @abstractmethod
    def create_graph(self, nodes: Sequence[NodeDecl], edges: Sequence[Edge]) -> Graph:
        """Persist a new immutable graph snapshot atomically and return it."""

    @abstractmethod
    def get_graph(self, graph_id: int) -> Graph:
        """Load a graph snapshot; raises NotFoundError."""

    @abstractmethod
    def latest_graph(self) -> Graph | None:
        """Most recently created graph, if any."""

    @abstractmethod
    def set_node_last_updated(self, graph_id: int, node_name: str, when: datetime) -> None:
        """Record when an action targeting ``node_name`` last completed."""

    # --- pipelines & actions ---

    @abstractmethod
    def create_pipeline(
        self,
        graph_id: int,
        planned_nodes: Sequence[str],
        *,
        target_nodes: Sequence[str] = (),
        force: bool = False,
    ) -> Pipeline:
        """Create a PENDING pipeline and one PENDING action per planned node, in order."""

    @abstractmethod
    def get_pipeline(self, pipeline_id: int) -> Pipeline:
        """Load a pipeline; raises NotFoundError."""

    @abstractmethod
    def list_pipelines(self) -> list[Pipeline]:
        """All pipelines, oldest first."""

    @abstractmethod
    def update_pipeline(
        self,
        pipeline_id: int,
        status: PipelineStatus,
        *,
        started_at: datetime | None = _UNSET,
        completed_at: datetime | None = _UNSET,
    ) -> Pipeline:
        """Set a pipeline's status and (optionally) timestamps in one write."""

    @abstractmethod
    def get_actions(self, pipeline_id: int) -> list[PipelineAction]:
        """Actions of a pipeline ordered by ``execution_order``."""

    @abstractmethod
    def get_action(self, action_id: int) -> PipelineAction:
        """Load an action; raises NotFoundError."""

    @abstractmethod
    def compare_and_set_action(
        self,
        action_id: int,
        expected: Iterable[ActionStatus],
        status: ActionStatus,
        **fields: Any,
    ) -> PipelineAction | None:
        """
        Atomically move an action to ``status`` if its current status is in ``expected``.

        ``fields`` may set started_at, completed_at, error_message,
        skipped_reason and attempts in the same write.

        Returns:
            The updated action, or None when the current status did not match
        """

    @abstractmethod
    def latest_completed_action(self, node_name: str, *, exclude_pipeline_id: int | None = None) -> PipelineAction | None:
        """Most recently completed action targeting ``node_name``."""

    # --- deltas ---

    @abstractmethod
    def insert_delta(self, action_id: int, insert_path: str, update_path: str, delete_path: str) -> Delta:
        """Append a delta; raises DeltaAlreadyRecordedError if the action has one."""

    @abstractmethod
    def complete_action_with_delta(
        self,
        action_id: int,
        completed_at: datetime,
        insert_path: str,
        update_path: str,
        delete_path: str,
    ) -> tuple[PipelineAction, Delta] | None:
        """
        Move a RUNNING action to COMPLETED together with its delta.

        The status change, the delta row and the target node's
        ``last_updated_at`` are one write: either all of them land or none.

        Returns:
            The completed action and its delta, or None (nothing written)
            when the action is not RUNNING

        Raises:
            DeltaAlreadyRecordedError: the action already has a delta
        """

    @abstractmethod
    def get_delta(self, action_id: int) -> Delta | None:
        """Delta recorded for an action, if any."""

    @abstractmethod
    def deltas_for_node(self, node_name: str) -> list[Delta]:
        """All deltas of actions targeting ``node_name``, oldest first."""

    def close(self) -> None:
        """Release backend resources."""


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class MemoryStateStore(StateStore):
    """Process-local store; nothing survives the process."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._graphs: dict[int, Graph] = {}
        self._pipelines: dict[int, Pipeline] = {}
        self._actions: dict[int, PipelineAction] = {}
        self._deltas: dict[int, Delta] = {}
        self._ids: dict[str, int] = {}

    def _next_id(self, kind: str) -> int:
        self._ids[kind] = self._ids.get(kind, 0) + 1
        return self._ids[kind]

    def create_graph(self, nodes: Sequence[NodeDecl], edges: Sequence[Edge]) -> Graph:
        with self._lock:
            graph = Graph(
                nodes=tuple(Node(name=n.name, config=n.config, id=self._next_id("node")) for n in nodes),
                edges=tuple(edges),
                id=self._next_id("graph"),
                created_at=utcnow(),
            )
            self._graphs[graph.id] = graph
            return graph

    def get_graph(self, graph_id: int) -> Graph:
        with self._lock:
            try:
                return self._graphs[graph_id]
            except KeyError:
                raise NotFoundError("Graph", graph_id) from None

    def latest_graph(self) -> Graph | None:
        with self._lock:
            if not self._graphs:
                return None
            return self._graphs[max(self._graphs)]

    def set_node_last_updated(self, graph_id: int, node_name: str, when: datetime) -> None:
        with self._lock:
            graph = self.get_graph(graph_id)
            graph.get_node(node_name)
            nodes = tuple(
                dataclasses.replace(node, last_updated_at=when) if node.name == node_name else node
                for node in graph.nodes
            )
            self._graphs[graph_id] = Graph(nodes=nodes, edges=graph.edges, id=graph.id, created_at=graph.created_at)

    def create_pipeline(self, graph_id, planned_nodes, *, target_nodes=(), force=False) -> Pipeline:
        with self._lock:
            self.get_graph(graph_id)
            pipeline = Pipeline(
                id=self._next_id("pipeline"),
                graph_id=graph_id,
                created_at=utcnow(),
                target_nodes=tuple(target_nodes),
                force=force,
            )
            self._pipelines[pipeline.id] = pipeline
            for order, name in enumerate(planned_nodes):
                action = PipelineAction(
                    id=self._next_id("action"),
                    pipeline_id=pipeline.id,
                    table_name=name,
                    execution_order=order,
                )
                self._actions[action.id] = action
            return pipeline

    def get_pipeline(self, pipeline_id: int) -> Pipeline:
        with self._lock:
            try:
                return self._pipelines[pipeline_id]
            except KeyError:
                raise NotFoundError("Pipeline", pipeline_id) from None

    def list_pipelines(self) -> list[Pipeline]:
        with self._lock:
            return [self._pipelines[i] for i in sorted(self._pipelines)]

    def update_pipeline(self, pipeline_id, status, *, started_at=_UNSET, completed_at=_UNSET) -> Pipeline:
        with self._lock:
            changes: dict[str, Any] = {"status": PipelineStatus(status)}
            if started_at is not _UNSET:
                changes["started_at"] = started_at
            if completed_at is not _UNSET:
                changes["completed_at"] = completed_at
            pipeline = dataclasses.replace(self.get_pipeline(pipeline_id), **changes)
            self._pipelines[pipeline_id] = pipeline
            return pipeline

    def get_actions(self, pipeline_id: int) -> list[PipelineAction]:
        with self._lock:
            self.get_pipeline(pipeline_id)
            actions = [a for a in self._actions.values() if a.pipeline_id == pipeline_id]
            return sorted(actions, key=lambda a: a.execution_order)

    def get_action(self, action_id: int) -> PipelineAction:
        with self._lock:
            try:
                return self._actions[action_id]
            except KeyError:
                raise NotFoundError("Action", action_id) from None

    def compare_and_set_action(self, action_id, expected, status, **fields) -> PipelineAction | None:
        _check_action_fields(fields)
        expected = {ActionStatus(s) for s in expected}
        with self._lock:
            current = self.get_action(action_id)
            if current.status not in expected:
                return None
            updated = dataclasses.replace(current, status=ActionStatus(status), **fields)
            self._actions[action_id] = updated
            return updated

    def latest_completed_action(self, node_name, *, exclude_pipeline_id=None) -> PipelineAction | None:
        with self._lock:
            candidates = [
                a
                for a in self._actions.values()
                if a.table_name == node_name
                and a.status == ActionStatus.COMPLETED
                and a.pipeline_id != exclude_pipeline_id
            ]
            if not candidates:
                return None
            return max(candidates, key=lambda a: (a.completed_at or datetime.min, a.id))

    def insert_delta(self, action_id, insert_path, update_path, delete_path) -> Delta:
        with self._lock:
            self.get_action(action_id)
            if any(d.action_id == action_id for d in self._deltas.values()):
                raise DeltaAlreadyRecordedError(action_id)
            delta = Delta(
                id=self._next_id("delta"),
                action_id=action_id,
                insert_path=insert_path,
                update_path=update_path,
                delete_path=delete_path,
                created_at=utcnow(),
            )
            self._deltas[delta.id] = delta
            return delta

    def complete_action_with_delta(self, action_id, completed_at, insert_path, update_path, delete_path):
        with self._lock:
            snapshot = (dict(self._graphs), dict(self._actions), dict(self._deltas), dict(self._ids))
            try:
                action = self.compare_and_set_action(
                    action_id, {ActionStatus.RUNNING}, ActionStatus.COMPLETED, completed_at=completed_at
                )
                if action is None:
                    return None
                delta = self.insert_delta(action_id, insert_path, update_path, delete_path)
                graph_id = self.get_pipeline(action.pipeline_id).graph_id
                self.set_node_last_updated(graph_id, action.table_name, completed_at)
            except BaseException:
                self._graphs, self._actions, self._deltas, self._ids = snapshot
                raise
            return action, delta

    def get_delta(self, action_id: int) -> Delta | None:
        with self._lock:
            for delta in self._deltas.values():
                if delta.action_id == action_id:
                    return delta
            return None

    def deltas_for_node(self, node_name: str) -> list[Delta]:
        with self._lock:
            return [
                self._deltas[i]
                for i in sorted(self._deltas)
                if self._actions[self._deltas[i].action_id].table_name == node_name
            ]


# ---------------------------------------------------------------------------
# DuckDB store (ibis)
# ---------------------------------------------------------------------------


def _escape_sql_string(value: str) -> str:
    """Escape single quotes for SQL strings."""
    return value.replace("'", "''")


def _sql_value(value: Any) -> str:
    """Convert Python value to SQL string representation."""
    if value is None:
        return "NULL"
    # bool must be checked before int/float because ``isinstance(True, int)``
    # is True in Python (bool is a subclass of int).
    elif isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    elif isinstance(value, (int, float)):
        return str(value)
    elif isinstance(value, str):
        escaped = _escape_sql_string(value)
        return f"'{escaped}'"
    elif isinstance(value, datetime):
        return f"TIMESTAMP '{value.isoformat()}'"
    elif isinstance(value, (dict, list, tuple)):
        escaped = _escape_sql_string(json.dumps(value, sort_keys=True, default=str))
        return f"'{escaped}'"
    else:
        escaped = _escape_sql_string(str(value))
        return f"'{escaped}'"


def _json_value(value: Any) -> Any:
    if value is None or not isinstance(value, str):
        return value
    return json.loads(value)


_TABLES = {
    "graphs": """
        id BIGINT PRIMARY KEY,
        created_at TIMESTAMP NOT NULL
    """,
    "nodes": """
        id BIGINT PRIMARY KEY,
        graph_id BIGINT NOT NULL,
        name VARCHAR NOT NULL,
        config_json JSON,
        last_updated_at TIMESTAMP
    """,
    "edges": """
        id BIGINT PRIMARY KEY,
        graph_id BIGINT NOT NULL,
        from_node VARCHAR NOT NULL,
        to_node VARCHAR NOT NULL
    """,
    "pipelines": """
        id BIGINT PRIMARY KEY,
        graph_id BIGINT NOT NULL,
        status VARCHAR NOT NULL,
        created_at TIMESTAMP NOT NULL,
        started_at TIMESTAMP,
        completed_at TIMESTAMP,
        target_nodes JSON,
        forced BOOLEAN DEFAULT FALSE
    """,
    "pipeline_actions": """
        id BIGINT PRIMARY KEY,
        pipeline_id BIGINT NOT NULL,
        table_name VARCHAR NOT NULL,
        execution_order INTEGER NOT NULL,
        status VARCHAR NOT NULL,
        started_at TIMESTAMP,
        completed_at TIMESTAMP,
        error_message VARCHAR,
        skipped_reason VARCHAR,
        attempts INTEGER DEFAULT 0
    """,
    "deltas": """
        id BIGINT PRIMARY KEY,
        action_id BIGINT NOT NULL UNIQUE,
        insert_path VARCHAR,
        update_path VARCHAR,
        delete_path VARCHAR,
        created_at TIMESTAMP NOT NULL
    """,
}

_ACTION_COLUMNS = (
    "id, pipeline_id, table_name, execution_order, status, started_at, completed_at, "
    "error_message, skipped_reason, attempts"
)
_PIPELINE_COLUMNS = "id, graph_id, status, created_at, started_at, completed_at, target_nodes, forced"
_DELTA_COLUMNS = "id, action_id, insert_path, update_path, delete_path, created_at"


class DuckDBStateStore(StateStore):
    """
    Store backed by a DuckDB database through ibis.

    Args:
        path: Database file, or ``":memory:"`` for an in-process database
        connection: Existing ibis DuckDB backend to use instead of ``path``
    """

    def __init__(self, path: str | Path = ":memory:", connection: ibis.BaseBackend | None = None):
        self.path = str(path)
        self._lock = threading.RLock()
        self._connection = connection
        self._initialized = False

    # --- connection plumbing ---

    def _get_connection(self) -> ibis.BaseBackend:
        if self._connection is None:
            try:
                if self.path == ":memory:":
                    self._connection = ibis.duckdb.connect()
                else:
                    Path(self.path).parent.mkdir(parents=True, exist_ok=True)
                    self._connection = ibis.duckdb.connect(self.path)
            except Exception as e:
                raise StoreUnavailableError(
                    f"Could not open state database {self.path}: {e}", details={"path": self.path}
                ) from e
        if not self._initialized:
            self._initialize_schema(self._connection)
        return self._connection

    def _initialize_schema(self, conn: ibis.BaseBackend) -> None:
        """Create the deltaflow schema, tables and id sequences if they don't exist."""
        self._run(conn, f"CREATE SCHEMA IF NOT EXISTS {SCHEMA_NAME}")
        for table, columns in _TABLES.items():
            self._run(conn, f"CREATE TABLE IF NOT EXISTS {SCHEMA_NAME}.{table} ({columns})")
            self._run(conn, f"CREATE SEQUENCE IF NOT EXISTS {SCHEMA_NAME}.{table}_id_seq START 1")
        self._initialized = True
        logger.debug(f"State database initialized with schema '{SCHEMA_NAME}' ({self.path})")

    def _run(self, conn: ibis.BaseBackend, sql: str) -> Any:
        try:
            return conn.raw_sql(sql)
        except DeltaflowError:
            raise
        except Exception as e:
            raise StoreUnavailableError(f"State database error: {e}", details={"sql": sql.strip()}) from e

    def _execute(self, sql: str) -> None:
        self._run(self._get_connection(), sql)

    def _query(self, sql: str) -> list[dict[str, Any]]:
        conn = self._get_connection()
        cursor = self._run(conn, sql)
        try:
            columns = [desc[0] for desc in cursor.description]
            return [dict(zip(columns, row, strict=False)) for row in cursor.fetchall()]
        except Exception as e:
            raise StoreUnavailableError(f"State database error: {e}", details={"sql": sql.strip()}) from e

    def _next_id(self, table: str) -> int:
        rows = self._query(f"SELECT nextval('{SCHEMA_NAME}.{table}_id_seq') AS id")
        return int(rows[0]["id"])

    def _transaction(self, statements: Sequence[str]) -> None:
        conn = self._get_connection()
        self._run(conn, "BEGIN TRANSACTION")
        try:
            for sql in statements:
                self._run(conn, sql)
            self._run(conn, "COMMIT")
        except BaseException:
            try:
                conn.raw_sql("ROLLBACK")
            except Exception as rollback_error:
                logger.warning(f"Rollback failed: {rollback_error}")
            raise

    def _insert(self, table: str, row: dict[str, Any]) -> str:
        columns = ", ".join(row)
        values = ", ".join(_sql_value(v) for v in row.values())
        return f"INSERT INTO {SCHEMA_NAME}.{table} ({columns}) VALUES ({values})"

    # --- row mapping ---

    @staticmethod
    def _to_pipeline(row: dict[str, Any]) -> Pipeline:
        return Pipeline(
            id=int(row["id"]),
            graph_id=int(row["graph_id"]),
            status=PipelineStatus(row["status"]),
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            target_nodes=tuple(_json_value(row["target_nodes"]) or ()),
            force=bool(row["forced"]),
        )

    @staticmethod
    def _to_action(row: dict[str, Any]) -> PipelineAction:
        return PipelineAction(
            id=int(row["id"]),
            pipeline_id=int(row["pipeline_id"]),
            table_name=row["table_name"],
            execution_order=int(row["execution_order"]),
            status=ActionStatus(row["status"]),
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            error_message=row["error_message"],
            skipped_reason=row["skipped_reason"],
            attempts=int(row["attempts"] or 0),
        )

    @staticmethod
    def _to_delta(row: dict[str, Any]) -> Delta:
        return Delta(
            id=int(row["id"]),
            action_id=int(row["action_id"]),
            insert_path=row["insert_path"] or "",
            update_path=row["update_path"] or "",
            delete_path=row["delete_path"] or "",
            created_at=row["created_at"],
        )

    # --- graphs ---

    def create_graph(self, nodes: Sequence[NodeDecl], edges: Sequence[Edge]) -> Graph:
        with self._lock:
            graph_id = self._next_id("graphs")
            created_at = utcnow()
            stored_nodes = [
                Node(name=n.name, config=n.config, id=self._next_id("nodes")) for n in nodes
            ]
            statements = [self._insert("graphs", {"id": graph_id, "created_at": created_at})]
            statements += [
                self._insert(
                    "nodes",
                    {"id": n.id, "graph_id": graph_id, "name": n.name, "config_json": n.config},
                )
                for n in stored_nodes
            ]
            statements += [
                self._insert(
                    "edges",
                    {
                        "id": self._next_id("edges"),
                        "graph_id": graph_id,
                        "from_node": e.from_node,
                        "to_node": e.to_node,
                    },
                )
                for e in edges
            ]
            self._transaction(statements)
            logger.debug(f"Created graph {graph_id} with {len(stored_nodes)} nodes and {len(edges)} edges")
            return Graph(nodes=tuple(stored_nodes), edges=tuple(edges), id=graph_id, created_at=created_at)

    def get_graph(self, graph_id: int) -> Graph:
        with self._lock:
            rows = self._query(f"SELECT id, created_at FROM {SCHEMA_NAME}.graphs WHERE id = {_sql_value(graph_id)}")
            if not rows:
                raise NotFoundError("Graph", graph_id)
            node_rows = self._query(
                f"SELECT id, name, config_json, last_updated_at FROM {SCHEMA_NAME}.nodes "
                f"WHERE graph_id = {_sql_value(graph_id)} ORDER BY id"
            )
            edge_rows = self._query(
                f"SELECT from_node, to_node FROM {SCHEMA_NAME}.edges "
                f"WHERE graph_id = {_sql_value(graph_id)} ORDER BY id"
            )
            return Graph(
                nodes=tuple(
                    Node(
                        name=r["name"],
                        config=_json_value(r["config_json"]),
                        id=int(r["id"]),
                        last_updated_at=r["last_updated_at"],
                    )
                    for r in node_rows
                ),
                edges=tuple(Edge(r["from_node"], r["to_node"]) for r in edge_rows),
                id=int(rows[0]["id"]),
                created_at=rows[0]["created_at"],
            )

    def latest_graph(self) -> Graph | None:
        with self._lock:
            rows = self._query(f"SELECT MAX(id) AS id FROM {SCHEMA_NAME}.graphs")
            if not rows or rows[0]["id"] is None:
                return None
            return self.get_graph(int(rows[0]["id"]))

    def set_node_last_updated(self, graph_id: int, node_name: str, when: datetime) -> None:
        with self._lock:
            self._execute(
                f"UPDATE {SCHEMA_NAME}.nodes SET last_updated_at = {_sql_value(when)} "
                f"WHERE graph_id = {_sql_value(graph_id)} AND name = {_sql_value(node_name)}"
            )

    # --- pipelines & actions ---

    def create_pipeline(self, graph_id, planned_nodes, *, target_nodes=(), force=False) -> Pipeline:
        with self._lock:
            self.get_graph(graph_id)
            pipeline = Pipeline(
                id=self._next_id("pipelines"),
                graph_id=graph_id,
                created_at=utcnow(),
                target_nodes=tuple(target_nodes),
                force=force,
            )
            statements = [
                self._insert(
                    "pipelines",
                    {
                        "id": pipeline.id,
                        "graph_id": graph_id,
                        "status": str(pipeline.status),
                        "created_at": pipeline.created_at,
                        "target_nodes": list(pipeline.target_nodes),
                        "forced": force,
                    },
                )
            ]
            statements += [
                self._insert(
                    "pipeline_actions",
                    {
                        "id": self._next_id("pipeline_actions"),
                        "pipeline_id": pipeline.id,
                        "table_name": name,
                        "execution_order": order,
                        "status": str(ActionStatus.PENDING),
                        "attempts": 0,
                    },
                )
                for order, name in enumerate(planned_nodes)
            ]
            self._transaction(statements)
            return pipeline

    def get_pipeline(self, pipeline_id: int) -> Pipeline:
        with self._lock:
            rows = self._query(
                f"SELECT {_PIPELINE_COLUMNS} FROM {SCHEMA_NAME}.pipelines WHERE id = {_sql_value(pipeline_id)}"
            )
            if not rows:
                raise NotFoundError("Pipeline", pipeline_id)
            return self._to_pipeline(rows[0])

    def list_pipelines(self) -> list[Pipeline]:
        with self._lock:
            rows = self._query(f"SELECT {_PIPELINE_COLUMNS} FROM {SCHEMA_NAME}.pipelines ORDER BY id")
            return [self._to_pipeline(r) for r in rows]

    def update_pipeline(self, pipeline_id, status, *, started_at=_UNSET, completed_at=_UNSET) -> Pipeline:
        with self._lock:
            assignments = [f"status = {_sql_value(str(PipelineStatus(status)))}"]
            if started_at is not _UNSET:
                assignments.append(f"started_at = {_sql_value(started_at)}")
            if completed_at is not _UNSET:
                assignments.append(f"completed_at = {_sql_value(completed_at)}")
            self.get_pipeline(pipeline_id)
            self._execute(
                f"UPDATE {SCHEMA_NAME}.pipelines SET {', '.join(assignments)} WHERE id = {_sql_value(pipeline_id)}"
            )
            return self.get_pipeline(pipeline_id)

    def get_actions(self, pipeline_id: int) -> list[PipelineAction]:
        with self._lock:
            self.get_pipeline(pipeline_id)
            rows = self._query(
                f"SELECT {_ACTION_COLUMNS} FROM {SCHEMA_NAME}.pipeline_actions "
                f"WHERE pipeline_id = {_sql_value(pipeline_id)} ORDER BY execution_order"
            )
            return [self._to_action(r) for r in rows]

    def get_action(self, action_id: int) -> PipelineAction:
        with self._lock:
            rows = self._query(
                f"SELECT {_ACTION_COLUMNS} FROM {SCHEMA_NAME}.pipeline_actions WHERE id = {_sql_value(action_id)}"
            )
            if not rows:
                raise NotFoundError("Action", action_id)
            return self._to_action(rows[0])

    def compare_and_set_action(self, action_id, expected, status, **fields) -> PipelineAction | None:
        _check_action_fields(fields)
        expected = sorted(str(ActionStatus(s)) for s in expected)
        with self._lock:
            current = self.get_action(action_id)
            if str(current.status) not in expected:
                return None
            assignments = [f"status = {_sql_value(str(ActionStatus(status)))}"]
            assignments += [f"{name} = {_sql_value(value)}" for name, value in sorted(fields.items())]
            expected_sql = ", ".join(_sql_value(s) for s in expected)
            self._execute(
                f"UPDATE {SCHEMA_NAME}.pipeline_actions SET {', '.join(assignments)} "
                f"WHERE id = {_sql_value(action_id)} AND status IN ({expected_sql})"
            )
            return self.get_action(action_id)

    def latest_completed_action(self, node_name, *, exclude_pipeline_id=None) -> PipelineAction | None:
        with self._lock:
            exclude = ""
            if exclude_pipeline_id is not None:
                exclude = f" AND pipeline_id <> {_sql_value(exclude_pipeline_id)}"
            rows = self._query(
                f"SELECT {_ACTION_COLUMNS} FROM {SCHEMA_NAME}.pipeline_actions "
                f"WHERE table_name = {_sql_value(node_name)} AND status = {_sql_value(str(ActionStatus.COMPLETED))}"
                f"{exclude} ORDER BY completed_at DESC NULLS LAST, id DESC LIMIT 1"
            )
            return self._to_action(rows[0]) if rows else None

    # --- deltas ---

    def _new_delta(self, action_id: int, insert_path: str, update_path: str, delete_path: str) -> Delta:
        if self.get_delta(action_id) is not None:
            raise DeltaAlreadyRecordedError(action_id)
        return Delta(
            id=self._next_id("deltas"),
            action_id=action_id,
            insert_path=insert_path,
            update_path=update_path,
            delete_path=delete_path,
            created_at=utcnow(),
        )

    def _insert_delta_sql(self, delta: Delta) -> str:
        return self._insert("deltas", dataclasses.asdict(delta))

    def insert_delta(self, action_id, insert_path, update_path, delete_path) -> Delta:
        with self._lock:
            self.get_action(action_id)
            delta = self._new_delta(action_id, insert_path, update_path, delete_path)
            self._execute(self._insert_delta_sql(delta))
            return delta

    def complete_action_with_delta(self, action_id, completed_at, insert_path, update_path, delete_path):
        with self._lock:
            current = self.get_action(action_id)
            if current.status != ActionStatus.RUNNING:
                return None
            graph_id = self.get_pipeline(current.pipeline_id).graph_id
            delta = self._new_delta(action_id, insert_path, update_path, delete_path)
            self._transaction(
                [
                    f"UPDATE {SCHEMA_NAME}.pipeline_actions "
                    f"SET status = {_sql_value(str(ActionStatus.COMPLETED))}, completed_at = {_sql_value(completed_at)} "
                    f"WHERE id = {_sql_value(action_id)} AND status = {_sql_value(str(ActionStatus.RUNNING))}",
                    self._insert_delta_sql(delta),
                    f"UPDATE {SCHEMA_NAME}.nodes SET last_updated_at = {_sql_value(completed_at)} "
                    f"WHERE graph_id = {_sql_value(graph_id)} AND name = {_sql_value(current.table_name)}",
                ]
            )
            return self.get_action(action_id), delta

    def get_delta(self, action_id: int) -> Delta | None:
        with self._lock:
            rows = self._query(
                f"SELECT {_DELTA_COLUMNS} FROM {SCHEMA_NAME}.deltas WHERE action_id = {_sql_value(action_id)}"
            )
            return self._to_delta(rows[0]) if rows else None

    def deltas_for_node(self, node_name: str) -> list[Delta]:
        with self._lock:
            columns = ", ".join(f"d.{c.strip()}" for c in _DELTA_COLUMNS.split(","))
            rows = self._query(
                f"SELECT {columns} FROM {SCHEMA_NAME}.deltas d "
                f"JOIN {SCHEMA_NAME}.pipeline_actions a ON a.id = d.action_id "
                f"WHERE a.table_name = {_sql_value(node_name)} ORDER BY d.id"
            )
            return [self._to_delta(r) for r in rows]

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                disconnect = getattr(self._connection, "disconnect", None)
                if disconnect is not None:
                    disconnect()
                self._connection = None
                self._initialized = False
