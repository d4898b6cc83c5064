from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from psycopg2 import sql
from psycopg2.extensions import cursor as Psycopg2Cursor

from roadgraph.db.core import rows_to_copy_buffer
from roadgraph.db.tables import STAGED_COLUMNS, GraphTables

logger = logging.getLogger(__name__)


@dataclass
class StagingTable:
    """Handle to a chunk's staging table, valid inside its unit of work."""

    name: str
    rows_staged: int = 0
    dropped: bool = False

    @property
    def identifier(self) -> sql.Identifier:
        return sql.Identifier(self.name)

    def drop(self, cur: Psycopg2Cursor) -> None:
        if self.dropped:
            return
        cur.execute(sql.SQL("drop table if exists {}").format(self.identifier))
        self.dropped = True
        logger.debug("Dropped staging table %s", self.name)


class StagingLoader:
    """
    COPYs a chunk's candidate edge rows into a fresh temp table.

    The table is created ``on commit drop`` inside the caller's
    transaction, so it disappears when the chunk commits and its creation
    is undone when the chunk rolls back.

    Usage:
        with engine.unit_of_work() as unit:
            staging = StagingLoader(tables).load(unit.cursor, rows)
    """

    def __init__(self, tables: GraphTables) -> None:
        self.tables = tables
        self.columns = list(STAGED_COLUMNS)

    def new_table_name(self) -> str:
        # Random suffix so concurrent sessions never share a name
        return f"_staging_{self.tables.ways_name}_{uuid.uuid4().hex[:8]}"

    def load(self, cur: Psycopg2Cursor, rows: list[dict[str, Any]]) -> StagingTable:
        staging = StagingTable(name=self.new_table_name())
        cur.execute(self.tables.create_staging(staging.name))

        col_list = sql.SQL(", ").join(sql.Identifier(c) for c in self.columns)
        cur.copy_expert(
            sql.SQL("copy {} ({}) from stdin with (format text, NULL '\\N')").format(
                staging.identifier, col_list
            ),
            rows_to_copy_buffer(rows, self.columns, end_marker=True),
        )
        staging.rows_staged = len(rows)

        self._create_indexes(cur, staging)
        logger.info("Staged %d rows in %s", staging.rows_staged, staging.name)
        return staging

    def _create_indexes(self, cur: Psycopg2Cursor, staging: StagingTable) -> None:
        cur.execute(
            sql.SQL("create index on {} using gist (the_geom)").format(staging.identifier)
        )
        for column in ("source_osm", "target_osm"):
            cur.execute(
                sql.SQL("create index on {} using btree ({})").format(
                    staging.identifier, sql.Identifier(column)
                )
            )
