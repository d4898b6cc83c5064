"""
Raw OSM element export.

Copies every node (tagged only), way and relation of a PBF file into the
osm_nodes, osm_ways and osm_relations tables of the graph schema, keyed
by osm_id. Elements already present are left unchanged, so re-exporting
a file adds nothing.

A database error while loading one table is logged and the export moves
on to the next table.
"""

from __future__ import annotations

import logging
from pathlib import Path

import psycopg2

from roadgraph.db.core import PostgresEngine
from roadgraph.db.tables import GraphTables
from roadgraph.osm.types import OSM_ELEMENT_TYPES
from roadgraph.parsers.pbf import parse_osm_elements

logger = logging.getLogger(__name__)


def export_osm(
    engine: PostgresEngine,
    filepath: str | Path,
    tables: GraphTables,
    location_storage: str = "flex_mem",
    batch_size: int = 50_000,
) -> dict[str, int]:
    """
    Load the raw elements of *filepath* into the osm_* tables.

    Returns the number of rows inserted per table name. A table whose
    load failed reports the rows inserted before the failure.
    """
    counts: dict[str, int] = {}
    for element_type in OSM_ELEMENT_TYPES:
        table = tables.osm_table_name(element_type)
        batches, result = parse_osm_elements(
            filepath,
            element_type,
            srid=tables.srid,
            batch_size=batch_size,
            location_storage=location_storage,
        )
        inserted = 0
        try:
            for batch in batches:
                inserted += engine.ingest_batch(
                    batch,
                    target_table=table,
                    target_schema=tables.schema,
                    conflict_column="osm_id",
                )
        except psycopg2.Error as e:
            logger.error("Error while exporting to %s.%s: %s", tables.schema, table, e)
        counts[table] = inserted
        logger.info(
            "Exported %d of %d %s to %s.%s",
            inserted,
            result.elements_parsed,
            element_type,
            tables.schema,
            table,
        )
    return counts
