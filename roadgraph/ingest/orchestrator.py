"""
Chunked graph ingestion.

Turns a sequence of Ways into rows of the ways / ways_vertices_pgr
tables, one chunk at a time. Each chunk runs in its own unit of work:

    rows -> StagingLoader -> DeduplicationFilter -> TopologyResolver
         -> MergeCommitter (commit)

A database error inside a chunk rolls back that chunk only; it is
logged with the chunk's way range and the loop moves on. Nothing is
retried. A connection failure while preparing the schema is fatal.

Usage:
    engine = PostgresEngine(DatabaseCredentials.from_env_file(".env", "GIS_DB_"))
    orchestrator = IngestionOrchestrator(
        engine,
        configuration=CAR_CONFIGURATION,
        config=IngestConfig(chunk_size=20000, schema="routing"),
        splitter=NodeUsageSplitter.from_ways(ways),
    )
    orchestrator.prepare_schema()
    run = orchestrator.ingest(ways)
    print(run.edges_added, run.chunks_failed)
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any

from tqdm import tqdm

from roadgraph.db.core import PostgresEngine
from roadgraph.ingest.config import IngestConfig
from roadgraph.ingest.dedup import DeduplicationFilter
from roadgraph.ingest.exceptions import (
    CHUNK_ERRORS,
    CONNECTION_ERRORS,
    FatalIngestError,
    MalformedTagError,
    classify_error,
)
from roadgraph.ingest.merge import MergeCommitter
from roadgraph.ingest.osm_export import export_osm as export_osm_elements
from roadgraph.ingest.results import ChunkResult, ChunkStatus
from roadgraph.ingest.rows import build_way_rows
from roadgraph.ingest.staging import StagingLoader
from roadgraph.ingest.topology import TopologyResolver
from roadgraph.osm.splitter import EdgeSplitter, NodeUsageSplitter, WholeWaySplitter
from roadgraph.osm.types import Configuration, Way
from roadgraph.parsers.pbf import parse_ways
from roadgraph.tracking.ingestion_tracker import IngestionRun, IngestionTracker

logger = logging.getLogger(__name__)


def iter_chunks(total: int, chunk_size: int) -> Iterator[tuple[int, int]]:
    """Yield (start, stop) bounds of consecutive chunks covering range(total)."""
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be at least 1, got {chunk_size}")
    start = 0
    while start < total:
        stop = min(start + chunk_size, total)
        yield start, stop
        start = stop


class IngestionOrchestrator:
    """
    Drives the chunk loop for one graph.

    Parameters
    ----------
    engine : PostgresEngine
        Store session shared by every chunk.
    configuration : Configuration
        Tag classes; supplies class_id and priority for each way.
    config : IngestConfig, optional
        Chunk size and table naming.
    splitter : EdgeSplitter, optional
        Cuts ways into segments. Defaults to WholeWaySplitter.
    tracker : IngestionTracker, optional
        Records the run. Defaults to an in-memory tracker.
    show_progress : bool
        Show a tqdm progress bar on standard output.
    """

    def __init__(
        self,
        engine: PostgresEngine,
        configuration: Configuration,
        config: IngestConfig | None = None,
        splitter: EdgeSplitter | None = None,
        tracker: IngestionTracker | None = None,
        show_progress: bool = True,
    ) -> None:
        self.engine = engine
        self.configuration = configuration
        self.config = config or IngestConfig()
        self.tables = self.config.tables()
        self.splitter = splitter or WholeWaySplitter()
        self.tracker = tracker or IngestionTracker()
        self.show_progress = show_progress

        self.loader = StagingLoader(self.tables)
        self.dedup = DeduplicationFilter(self.tables)
        self.resolver = TopologyResolver(self.tables, self.config.max_resolve_passes)
        self.committer = MergeCommitter(self.tables)

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def prepare_schema(self, drop_existing: bool = False, include_osm: bool = False) -> None:
        """
        Create the graph tables and export the configuration table.

        With ``include_osm`` the raw osm_nodes / osm_ways / osm_relations
        tables are created (and dropped, with ``drop_existing``) as well.

        Raises FatalIngestError when the store is unreachable or PostGIS
        is missing.
        """
        try:
            if not self.engine.has_extension("postgis"):
                raise FatalIngestError("The postgis extension is not installed")

            if drop_existing:
                for statement in self.tables.drop_statements(include_osm):
                    self.engine.execute(statement)
                logger.info("Dropped existing graph tables in schema %s", self.tables.schema)

            for statement in self.tables.create_statements(include_osm):
                self.engine.execute(statement)
            if self.tracker.engine is not None:
                for statement in self.tracker.create_statements():
                    self.engine.execute(statement)
            logger.info(
                "Graph tables ready: %s, %s",
                self.tables.qualified_ways_name,
                self.tables.vertices_name,
            )

            self.export_configuration()
        except CONNECTION_ERRORS as e:
            logger.error("FATAL ERROR: could not prepare graph tables: %s", e)
            raise FatalIngestError(f"Store unreachable during schema setup: {e}") from e

    def export_configuration(self) -> int:
        rows = self.configuration.to_rows()
        inserted = self.engine.ingest_batch(
            rows,
            target_table=self.tables.configuration_name,
            target_schema=self.tables.schema,
            conflict_column="class_id",
        )
        if inserted < len(rows):
            logger.warning(
                "%d of %d configured classes already exist in %s.%s and were left unchanged",
                len(rows) - inserted,
                len(rows),
                self.tables.schema,
                self.tables.configuration_name,
            )
        return inserted

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def build_rows(self, ways: Sequence[Way]) -> tuple[list[dict[str, Any]], int]:
        """Staging rows for a chunk, and the number of ways skipped."""
        rows: list[dict[str, Any]] = []
        skipped = 0
        for way in ways:
            try:
                rows.extend(
                    build_way_rows(way, self.configuration, self.splitter, self.tables.srid)
                )
            except MalformedTagError as e:
                skipped += 1
                logger.debug("Skipping way: %s", e)
        return rows, skipped

    def ingest(
        self, ways: Sequence[Way], metadata: dict[str, Any] | None = None
    ) -> IngestionRun:
        total = len(ways)
        run_metadata = {"chunk_size": self.config.chunk_size, **(metadata or {})}

        logger.info("Processing %d ways in chunks of %d", total, self.config.chunk_size)
        with (
            self.tracker.track(
                self.tables.qualified_ways_name, ways_total=total, metadata=run_metadata
            ) as run,
            tqdm(
                total=total,
                desc=self.tables.qualified_ways_name,
                unit="ways",
                file=sys.stdout,
                disable=not self.show_progress,
            ) as progress,
        ):
            for index, (start, stop) in enumerate(iter_chunks(total, self.config.chunk_size)):
                result = self.process_chunk(index, start, stop, ways[start:stop])
                run.record_chunk(result)
                progress.update(stop - start)

        logger.info(
            "Ingestion into %s finished: %d edges, %d vertices, "
            "%d ways skipped, %d of %d chunks failed",
            self.tables.qualified_ways_name,
            run.edges_added,
            run.vertices_added,
            run.ways_skipped,
            run.chunks_failed,
            len(run.chunks),
        )
        return run

    def process_chunk(
        self, index: int, start: int, stop: int, ways: Sequence[Way]
    ) -> ChunkResult:
        rows, skipped = self.build_rows(ways)
        result = ChunkResult(
            index=index, start=start, stop=stop, status=ChunkStatus.EMPTY, ways_skipped=skipped
        )
        if not rows:
            return result

        try:
            with self.engine.unit_of_work() as unit:
                staging = self.loader.load(unit.cursor, rows)
                result.rows_staged = staging.rows_staged
                result.duplicates_removed = self.dedup.apply(unit.cursor, staging)

                stats = self.resolver.resolve(unit.cursor, staging)
                result.resolve_passes = stats.passes
                result.vertices_added = stats.vertices_added

                result.edges_added = self.committer.commit(unit, staging)
        except CHUNK_ERRORS as e:
            kind = classify_error(e)
            logger.error(
                "Chunk %d rolled back while processing ways %d to %d (%s error): %s",
                index,
                start,
                stop,
                kind.value,
                e,
            )
            result.status = ChunkStatus.ROLLED_BACK
            result.error_kind = kind
            result.error = str(e).strip()
            result.duplicates_removed = 0
            result.vertices_added = 0
            result.edges_added = 0
            return result

        result.status = ChunkStatus.COMMITTED
        logger.info(
            "Chunk %d (ways %d to %d): %d edges inserted, %d vertices inserted",
            index,
            start,
            stop,
            result.edges_added,
            result.vertices_added,
        )
        return result


def ingest_pbf(
    engine: PostgresEngine,
    filepath: str | Path,
    configuration: Configuration,
    config: IngestConfig | None = None,
    location_storage: str = "flex_mem",
    drop_existing: bool = False,
    tracker: IngestionTracker | None = None,
    show_progress: bool = True,
    export_osm: bool = False,
) -> IngestionRun:
    """
    Parse an OSM PBF file and ingest its routable ways.

    Ways are split at every node shared with another way (or repeated
    within the same way). With ``export_osm`` every raw node, way and
    relation is also copied into the osm_* tables before the graph is
    built; the per-table counts land in the run metadata.
    """
    way_iter, parse_result = parse_ways(filepath, configuration, location_storage)
    ways = list(way_iter)

    orchestrator = IngestionOrchestrator(
        engine,
        configuration=configuration,
        config=config,
        splitter=NodeUsageSplitter.from_ways(ways),
        tracker=tracker,
        show_progress=show_progress,
    )
    orchestrator.prepare_schema(drop_existing=drop_existing, include_osm=export_osm)

    metadata: dict[str, Any] = {
        "source_file": Path(filepath).name,
        "ways_parsed": parse_result.ways_parsed,
        "ways_failed": parse_result.ways_failed,
    }
    if export_osm:
        metadata["osm_exported"] = export_osm_elements(
            engine, filepath, orchestrator.tables, location_storage=location_storage
        )
    return orchestrator.ingest(ways, metadata=metadata)
