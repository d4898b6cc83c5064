"""
Endpoint resolution for staged edges.

TopologyResolver runs a resolve/materialize fixed point over a staging
table:

  1. resolve:      copy vertex ids into ``source``/``target`` for every
                   row whose ``source_osm``/``target_osm`` is already a
                   vertex;
  2. stop if no row has a null ``source`` or ``target``;
  3. materialize:  insert a vertex for each distinct unresolved endpoint
                   osm id, taking the coordinates of its first staged
                   occurrence;
  4. go back to 1.

A well-formed chunk converges after the second resolve pass. The loop is
bounded by ``max_passes``; running out raises TopologyError so the chunk
is rolled back.

When one osm id is staged with different coordinates, the first-seen
coordinates become the vertex and the difference is not reported.

Finally length_m, cost_s and reverse_cost_s are computed for rows whose
length_m is still null, which keeps the computation idempotent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from psycopg2 import sql
from psycopg2.extensions import cursor as Psycopg2Cursor

from roadgraph.db.tables import GraphTables
from roadgraph.ingest.exceptions import TopologyError
from roadgraph.ingest.staging import StagingTable

logger = logging.getLogger(__name__)

# km/h -> m/s
KMH_TO_MS = sql.SQL("5.0 / 18.0")


@dataclass
class ResolveStats:
    passes: int = 0
    vertices_added: int = 0
    costs_computed: int = 0


class TopologyResolver:
    def __init__(self, tables: GraphTables, max_passes: int = 4) -> None:
        if max_passes < 2:
            raise ValueError(f"max_passes must be at least 2, got {max_passes}")
        self.tables = tables
        self.max_passes = max_passes

    def resolve(self, cur: Psycopg2Cursor, staging: StagingTable) -> ResolveStats:
        stats = ResolveStats()

        while True:
            self.fill_source_target(cur, staging)
            stats.passes += 1

            unresolved = self.count_unresolved(cur, staging)
            if unresolved == 0:
                break
            if stats.passes >= self.max_passes:
                raise TopologyError(
                    f"{unresolved} rows in {staging.name} still have unresolved "
                    f"endpoints after {stats.passes} resolve passes"
                )
            stats.vertices_added += self.materialize_vertices(cur, staging)

        stats.costs_computed = self.compute_costs(cur, staging)
        logger.info(
            "Resolved %s in %d passes: %d vertices inserted",
            staging.name,
            stats.passes,
            stats.vertices_added,
        )
        return stats

    def fill_source_target(self, cur: Psycopg2Cursor, staging: StagingTable) -> None:
        for column, osm_column in (("source", "source_osm"), ("target", "target_osm")):
            cur.execute(
                sql.SQL(
                    "update {staging} as w set {column} = v.id "
                    "from {vertices} as v "
                    "where w.{column} is null and w.{osm_column} = v.osm_id"
                ).format(
                    staging=staging.identifier,
                    vertices=self.tables.vertices,
                    column=sql.Identifier(column),
                    osm_column=sql.Identifier(osm_column),
                )
            )

    def count_unresolved(self, cur: Psycopg2Cursor, staging: StagingTable) -> int:
        cur.execute(
            sql.SQL(
                "select count(*) from {} where source is null or target is null"
            ).format(staging.identifier)
        )
        return cur.fetchone()[0]

    def materialize_vertices(self, cur: Psycopg2Cursor, staging: StagingTable) -> int:
        """
        Insert the missing endpoint vertices; returns how many were added.

        Existing vertices are skipped with NOT EXISTS rather than ON
        CONFLICT, so a concurrent writer that inserted the same osm_id
        surfaces as a unique violation and the chunk rolls back.
        """
        cur.execute(
            sql.SQL(
                """
                with endpoints as (
                    select source_osm as osm_id, x1 as lon, y1 as lat,
                           staging_id, 0 as side
                    from {staging} where source is null
                    union all
                    select target_osm as osm_id, x2 as lon, y2 as lat,
                           staging_id, 1 as side
                    from {staging} where target is null
                ),
                first_seen as (
                    select distinct on (osm_id) osm_id, lon, lat
                    from endpoints
                    order by osm_id, staging_id, side
                )
                insert into {vertices} (osm_id, lon, lat, the_geom)
                select f.osm_id, f.lon, f.lat,
                       ST_SetSRID(ST_MakePoint(f.lon, f.lat), %(srid)s)
                from first_seen f
                where not exists (
                    select 1 from {vertices} v where v.osm_id = f.osm_id
                )
                """
            ).format(staging=staging.identifier, vertices=self.tables.vertices),
            {"srid": self.tables.srid},
        )
        inserted = max(cur.rowcount, 0)
        logger.debug("Inserted %d vertices from %s", inserted, staging.name)
        return inserted

    def compute_costs(self, cur: Psycopg2Cursor, staging: StagingTable) -> int:
        """Set length_m, cost_s and reverse_cost_s where length_m is null."""
        length = sql.SQL("ST_Length(geography(ST_Transform(the_geom, 4326)))")
        cur.execute(
            sql.SQL(
                """
                update {staging}
                set length_m = {length},
                    cost_s = case
                        when one_way = -1
                            then -{length} / (maxspeed_forward * {factor})
                        else {length} / (maxspeed_forward * {factor})
                    end,
                    reverse_cost_s = case
                        when one_way = 1
                            then -{length} / (maxspeed_backward * {factor})
                        else {length} / (maxspeed_backward * {factor})
                    end
                where length_m is null
                """
            ).format(staging=staging.identifier, length=length, factor=KMH_TO_MS)
        )
        return max(cur.rowcount, 0)
