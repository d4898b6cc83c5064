from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Iterator

from psycopg2 import sql

from roadgraph.db.tables import validate_identifier
from roadgraph.ingest.results import ChunkResult, ChunkStatus


@dataclass
class IngestionRun:
    """Tracks a single graph ingestion run's state."""

    target_table: str
    metadata: dict[str, Any] = field(default_factory=dict)
    ways_total: int = 0
    ways_processed: int = 0
    ways_skipped: int = 0
    rows_staged: int = 0
    duplicates_removed: int = 0
    vertices_added: int = 0
    edges_added: int = 0
    chunks: list[ChunkResult] = field(default_factory=list)
    status: str = "running"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None

    def __enter__(self) -> IngestionRun:
        self.started_at = datetime.now(UTC)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.completed_at = datetime.now(UTC)
        if exc_type is not None:
            self.status = "failed"
            self.error = str(exc_val)
        elif self.chunks_failed:
            self.status = "partial"
        else:
            self.status = "success"
        return False

    def record_chunk(self, result: ChunkResult) -> None:
        self.chunks.append(result)
        self.ways_processed += result.stop - result.start
        self.ways_skipped += result.ways_skipped
        if result.status == ChunkStatus.ROLLED_BACK:
            return
        self.rows_staged += result.rows_staged
        self.duplicates_removed += result.duplicates_removed
        self.vertices_added += result.vertices_added
        self.edges_added += result.edges_added

    @property
    def chunks_committed(self) -> int:
        return sum(1 for c in self.chunks if c.status == ChunkStatus.COMMITTED)

    @property
    def chunks_failed(self) -> int:
        return sum(1 for c in self.chunks if c.status == ChunkStatus.ROLLED_BACK)

    @property
    def failed_chunks(self) -> list[ChunkResult]:
        return [c for c in self.chunks if c.status == ChunkStatus.ROLLED_BACK]


class IngestionTracker:
    """
    Tracks graph ingestion runs.

    When backed by a PostgresEngine, persists each finished run to the
    log table. When no engine is provided, operates in memory-only mode
    (useful for testing).
    """

    TABLE_NAME = "meta.graph_ingest_log"

    def __init__(self, engine: Any | None = None, table_name: str | None = None) -> None:
        self.engine = engine
        self.logger = logging.getLogger("ingestion_tracker")
        self._runs: list[IngestionRun] = []
        schema, table = (table_name or self.TABLE_NAME).split(".", 1)
        self._table = sql.Identifier(validate_identifier(schema), validate_identifier(table))
        self._schema = sql.Identifier(schema)

    @contextmanager
    def track(
        self,
        target_table: str,
        ways_total: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> Iterator[IngestionRun]:
        """Create, yield, and persist an IngestionRun."""
        run = IngestionRun(
            target_table=target_table,
            ways_total=ways_total,
            metadata=metadata or {},
        )
        self._runs.append(run)
        try:
            with run:
                yield run
        finally:
            self._persist_run(run)

    def create_statements(self) -> list[sql.Composed]:
        return [
            sql.SQL("create schema if not exists {}").format(self._schema),
            sql.SQL(
                """
                create table if not exists {} (
                    id bigserial primary key,
                    target_table text not null,
                    status text not null,
                    ways_total integer,
                    ways_processed integer,
                    ways_skipped integer,
                    rows_staged integer,
                    duplicates_removed integer,
                    vertices_added integer,
                    edges_added integer,
                    chunks_committed integer,
                    chunks_failed integer,
                    metadata jsonb,
                    started_at timestamptz,
                    completed_at timestamptz,
                    error_message text
                )
                """
            ).format(self._table),
        ]

    def _persist_run(self, run: IngestionRun) -> None:
        if self.engine is None:
            return
        try:
            self.engine.execute(
                sql.SQL(
                    """
                    insert into {}
                        (target_table, status, ways_total, ways_processed,
                         ways_skipped, rows_staged, duplicates_removed,
                         vertices_added, edges_added, chunks_committed,
                         chunks_failed, metadata, started_at, completed_at,
                         error_message)
                    values
                        (%(target_table)s, %(status)s, %(ways_total)s,
                         %(ways_processed)s, %(ways_skipped)s, %(rows_staged)s,
                         %(duplicates_removed)s, %(vertices_added)s,
                         %(edges_added)s, %(chunks_committed)s,
                         %(chunks_failed)s, %(metadata)s, %(started_at)s,
                         %(completed_at)s, %(error_message)s)
                    """
                ).format(self._table),
                {
                    "target_table": run.target_table,
                    "status": run.status,
                    "ways_total": run.ways_total,
                    "ways_processed": run.ways_processed,
                    "ways_skipped": run.ways_skipped,
                    "rows_staged": run.rows_staged,
                    "duplicates_removed": run.duplicates_removed,
                    "vertices_added": run.vertices_added,
                    "edges_added": run.edges_added,
                    "chunks_committed": run.chunks_committed,
                    "chunks_failed": run.chunks_failed,
                    "metadata": json.dumps(run.metadata),
                    "started_at": run.started_at,
                    "completed_at": run.completed_at,
                    "error_message": run.error,
                },
            )
        except Exception as e:
            self.logger.error("Failed to persist ingestion run: %s", e)

    @property
    def runs(self) -> list[IngestionRun]:
        return list(self._runs)

    @property
    def last_run(self) -> IngestionRun | None:
        return self._runs[-1] if self._runs else None
