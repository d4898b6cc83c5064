from __future__ import annotations

import logging

from psycopg2 import sql
from psycopg2.extensions import cursor as Psycopg2Cursor

from roadgraph.db.tables import GraphTables
from roadgraph.ingest.staging import StagingTable

logger = logging.getLogger(__name__)

# Exact vertex-sequence equality in either orientation. The bounding-box
# operator ~= lets the spatial indexes narrow the candidates first.
SAME_GEOMETRY = sql.SQL(
    "a.the_geom ~= b.the_geom and ("
    "ST_OrderingEquals(a.the_geom, b.the_geom) "
    "or ST_OrderingEquals(ST_Reverse(a.the_geom), b.the_geom))"
)


class DeduplicationFilter:
    """
    Removes staged rows whose geometry is already present.

    A staged row is dropped when a persisted edge has the same geometry,
    or when an earlier row of the same chunk (lower staging_id) does.
    """

    def __init__(self, tables: GraphTables) -> None:
        self.tables = tables

    def apply(self, cur: Psycopg2Cursor, staging: StagingTable) -> int:
        cur.execute(
            sql.SQL("delete from {staging} a using {ways} b where {same}").format(
                staging=staging.identifier, ways=self.tables.ways, same=SAME_GEOMETRY
            )
        )
        persisted = max(cur.rowcount, 0)

        cur.execute(
            sql.SQL(
                "delete from {staging} a using {staging} b "
                "where a.staging_id > b.staging_id and {same}"
            ).format(staging=staging.identifier, same=SAME_GEOMETRY)
        )
        repeated = max(cur.rowcount, 0)

        removed = persisted + repeated
        if removed:
            logger.info(
                "Removed %d duplicated rows from %s (%d already persisted, %d repeated)",
                removed,
                staging.name,
                persisted,
                repeated,
            )
        return removed
