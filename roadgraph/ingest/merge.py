from __future__ import annotations

import logging

from psycopg2 import sql

from roadgraph.db.core import UnitOfWork
from roadgraph.db.tables import RESOLVED_COLUMNS, STAGED_COLUMNS, GraphTables
from roadgraph.ingest.staging import StagingTable

logger = logging.getLogger(__name__)


class MergeCommitter:
    """
    Appends resolved staging rows to the ways table and commits the chunk.

    A failure anywhere before the commit leaves the unit of work
    uncommitted, so the enclosing context rolls the whole chunk back.
    """

    def __init__(self, tables: GraphTables) -> None:
        self.tables = tables
        self.columns = list(STAGED_COLUMNS) + list(RESOLVED_COLUMNS)

    def commit(self, unit: UnitOfWork, staging: StagingTable) -> int:
        cur = unit.cursor
        col_list = sql.SQL(", ").join(sql.Identifier(c) for c in self.columns)
        cur.execute(
            sql.SQL("insert into {ways} ({columns}) select {columns} from {staging}").format(
                ways=self.tables.ways, columns=col_list, staging=staging.identifier
            )
        )
        added = max(cur.rowcount, 0)

        staging.drop(cur)
        unit.commit()

        logger.info("Split ways inserted into %s: %d", self.tables.qualified_ways_name, added)
        return added
