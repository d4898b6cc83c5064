from __future__ import annotations

import logging
from pathlib import Path
from unittest.mock import MagicMock, patch

import osmium
import psycopg2
import pytest
from osmium.osm.mutable import Node as OsmNode
from osmium.osm.mutable import Way as OsmWay

from roadgraph.db.core import DatabaseCredentials, PostgresEngine
from roadgraph.ingest.config import IngestConfig
from roadgraph.ingest.exceptions import ErrorKind, FatalIngestError, TopologyError
from roadgraph.ingest.orchestrator import IngestionOrchestrator, ingest_pbf, iter_chunks
from roadgraph.ingest.results import ChunkStatus
from roadgraph.ingest.staging import StagingTable
from roadgraph.ingest.topology import ResolveStats
from roadgraph.osm.splitter import NodeUsageSplitter, WholeWaySplitter
from roadgraph.osm.types import Configuration, Node, TagClass, TagConfig, Way
from roadgraph.tracking.ingestion_tracker import IngestionTracker

RESIDENTIAL = TagConfig("highway", "residential")


@pytest.fixture
def configuration():
    return Configuration({RESIDENTIAL: TagClass(class_id=110, priority=2.5, maxspeed=50)})


def make_way(osm_id: int, tag: TagConfig = RESIDENTIAL) -> Way:
    return Way(
        osm_id=osm_id,
        nodes=(Node(osm_id * 10, 0.0, float(osm_id)), Node(osm_id * 10 + 1, 1.0, float(osm_id))),
        tag_config=tag,
        maxspeed_forward=50.0,
        maxspeed_backward=50.0,
    )


@pytest.fixture
def ways():
    return [make_way(i) for i in range(1, 11)]


@pytest.fixture
def mock_conn():
    conn = MagicMock()
    conn.closed = False
    conn.cursor.return_value = MagicMock(closed=False, rowcount=0)
    return conn


@pytest.fixture
def engine(mock_conn):
    eng = PostgresEngine(
        DatabaseCredentials(host="h", port=5432, database="d", username="u", password="p")
    )
    eng._conn = mock_conn
    return eng


def commit_rows(unit, staging):
    unit.commit()
    return staging.rows_staged


@pytest.fixture
def orchestrator(engine, configuration):
    orch = IngestionOrchestrator(
        engine,
        configuration,
        IngestConfig(chunk_size=2),
        show_progress=False,
    )
    orch.loader = MagicMock()
    orch.loader.load.side_effect = lambda cur, rows: StagingTable(
        name="_staging_ways_0000abcd", rows_staged=len(rows)
    )
    orch.dedup = MagicMock()
    orch.dedup.apply.return_value = 0
    orch.resolver = MagicMock()
    orch.resolver.resolve.return_value = ResolveStats(passes=2, vertices_added=4)
    orch.committer = MagicMock()
    orch.committer.commit.side_effect = commit_rows
    return orch


class TestIterChunks:
    def test_bounds(self):
        assert list(iter_chunks(5, 2)) == [(0, 2), (2, 4), (4, 5)]

    def test_exact_multiple(self):
        assert list(iter_chunks(4, 2)) == [(0, 2), (2, 4)]

    def test_empty(self):
        assert list(iter_chunks(0, 2)) == []

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            list(iter_chunks(5, 0))


class TestIngest:
    def test_all_chunks_committed(self, orchestrator, ways, mock_conn):
        run = orchestrator.ingest(ways)

        assert [c.status for c in run.chunks] == [ChunkStatus.COMMITTED] * 5
        assert [(c.start, c.stop) for c in run.chunks] == [
            (0, 2), (2, 4), (4, 6), (6, 8), (8, 10)
        ]
        assert run.status == "success"
        assert run.ways_processed == 10
        assert run.edges_added == 10
        assert run.vertices_added == 20
        assert mock_conn.commit.call_count == 5
        mock_conn.rollback.assert_not_called()

    def test_failed_chunk_is_isolated(self, orchestrator, ways, mock_conn):
        stats = ResolveStats(passes=2, vertices_added=4)
        orchestrator.resolver.resolve.side_effect = [
            stats,
            stats,
            psycopg2.IntegrityError("duplicate key value violates unique constraint"),
            stats,
            stats,
        ]

        run = orchestrator.ingest(ways)

        assert [c.status for c in run.chunks] == [
            ChunkStatus.COMMITTED,
            ChunkStatus.COMMITTED,
            ChunkStatus.ROLLED_BACK,
            ChunkStatus.COMMITTED,
            ChunkStatus.COMMITTED,
        ]
        failed = run.chunks[2]
        assert failed.error_kind == ErrorKind.CONSTRAINT
        assert "duplicate key" in failed.error
        assert failed.edges_added == 0
        assert failed.vertices_added == 0
        assert run.edges_added == 8
        assert run.status == "partial"
        assert run.chunks_failed == 1
        assert mock_conn.commit.call_count == 4
        mock_conn.rollback.assert_called_once()
        assert orchestrator.committer.commit.call_count == 4

    def test_failure_logged_with_way_range(self, orchestrator, ways, caplog):
        orchestrator.resolver.resolve.side_effect = [
            ResolveStats(passes=2),
            TopologyError("1 rows still have unresolved endpoints"),
            ResolveStats(passes=2),
            ResolveStats(passes=2),
            ResolveStats(passes=2),
        ]
        with caplog.at_level("ERROR"):
            run = orchestrator.ingest(ways)

        assert run.chunks[1].error_kind == ErrorKind.TOPOLOGY
        assert "while processing ways 2 to 4" in caplog.text

    def test_connection_loss_rolls_back_chunk_only(self, orchestrator, ways):
        orchestrator.loader.load.side_effect = [
            psycopg2.OperationalError("server closed the connection unexpectedly"),
            StagingTable(name="s", rows_staged=2),
            StagingTable(name="s", rows_staged=2),
            StagingTable(name="s", rows_staged=2),
            StagingTable(name="s", rows_staged=2),
        ]
        run = orchestrator.ingest(ways)

        assert run.chunks[0].error_kind == ErrorKind.CONNECTION
        assert run.chunks_committed == 4

    def test_malformed_ways_skipped(self, orchestrator):
        ways = [
            make_way(1),
            make_way(2, TagConfig("highway", "")),
            make_way(3, TagConfig("highway", "footway")),
            make_way(4),
        ]
        run = orchestrator.ingest(ways)

        assert run.ways_skipped == 2
        assert run.edges_added == 2
        staged = [call.args[1] for call in orchestrator.loader.load.call_args_list]
        assert [[r["osm_id"] for r in rows] for rows in staged] == [[1], [4]]

    def test_chunk_of_skipped_ways_is_empty(self, orchestrator, mock_conn):
        ways = [make_way(1, TagConfig("highway", "")), make_way(2, TagConfig("highway", ""))]
        run = orchestrator.ingest(ways)

        assert run.chunks[0].status == ChunkStatus.EMPTY
        assert run.status == "success"
        orchestrator.loader.load.assert_not_called()
        mock_conn.cursor.assert_not_called()

    def test_no_ways(self, orchestrator):
        run = orchestrator.ingest([])
        assert run.chunks == []
        assert run.status == "success"

    def test_run_tracked(self, orchestrator, ways):
        run = orchestrator.ingest(ways, metadata={"source_file": "roads.osm.pbf"})
        assert orchestrator.tracker.last_run is run
        assert run.target_table == "public.ways"
        assert run.ways_total == 10
        assert run.metadata == {"chunk_size": 2, "source_file": "roads.osm.pbf"}

    def test_progress_printed(self, engine, configuration, ways, capsys):
        orch = IngestionOrchestrator(engine, configuration, IngestConfig(chunk_size=5))
        orch.loader = MagicMock()
        orch.loader.load.return_value = StagingTable(name="s", rows_staged=5)
        orch.dedup = MagicMock()
        orch.dedup.apply.return_value = 0
        orch.resolver = MagicMock()
        orch.resolver.resolve.return_value = ResolveStats()
        orch.committer = MagicMock()
        orch.committer.commit.return_value = 5

        orch.ingest(ways)

        out = capsys.readouterr().out
        assert "public.ways" in out
        assert "10/10" in out
        assert "ways/s" in out

    def test_progress_disabled(self, orchestrator, ways, capsys):
        orchestrator.ingest(ways)
        assert capsys.readouterr().out == ""


class TestPrepareSchema:
    @pytest.fixture
    def mock_engine(self):
        engine = MagicMock()
        engine.has_extension.return_value = True
        engine.execute.return_value = 0
        engine.ingest_batch.return_value = 1
        return engine

    def test_creates_tables_and_exports_configuration(self, mock_engine, configuration):
        orch = IngestionOrchestrator(mock_engine, configuration, show_progress=False)
        orch.prepare_schema()

        assert mock_engine.execute.call_count == len(orch.tables.create_statements())
        mock_engine.ingest_batch.assert_called_once_with(
            configuration.to_rows(),
            target_table="configuration",
            target_schema="public",
            conflict_column="class_id",
        )

    def test_drop_existing(self, mock_engine, configuration, render):
        orch = IngestionOrchestrator(mock_engine, configuration, show_progress=False)
        orch.prepare_schema(drop_existing=True)

        statements = [render(c.args[0]) for c in mock_engine.execute.call_args_list]
        assert statements[0] == 'drop table if exists "public"."ways" cascade'
        assert len(statements) == len(orch.tables.drop_statements()) + len(
            orch.tables.create_statements()
        )

    def test_include_osm_tables(self, mock_engine, configuration, render):
        orch = IngestionOrchestrator(mock_engine, configuration, show_progress=False)
        orch.prepare_schema(drop_existing=True, include_osm=True)

        statements = [render(c.args[0]) for c in mock_engine.execute.call_args_list]
        assert 'drop table if exists "public"."osm_relations" cascade' in statements
        assert any(
            s.startswith('create table if not exists "public"."osm_nodes"') for s in statements
        )

    def test_existing_configuration_classes_reported(self, mock_engine, caplog):
        configuration = Configuration(
            {
                RESIDENTIAL: TagClass(class_id=110, priority=2.5, maxspeed=50),
                TagConfig("highway", "primary"): TagClass(class_id=106, priority=1.15),
            }
        )
        mock_engine.ingest_batch.return_value = 1
        orch = IngestionOrchestrator(mock_engine, configuration, show_progress=False)

        with caplog.at_level(logging.WARNING, logger="roadgraph.ingest.orchestrator"):
            assert orch.export_configuration() == 1
        assert "1 of 2 configured classes already exist in public.configuration" in caplog.text

    def test_new_configuration_not_reported(self, mock_engine, configuration, caplog):
        orch = IngestionOrchestrator(mock_engine, configuration, show_progress=False)
        with caplog.at_level(logging.WARNING, logger="roadgraph.ingest.orchestrator"):
            orch.export_configuration()
        assert "configured classes" not in caplog.text

    def test_creates_log_table_when_tracker_persists(self, mock_engine, configuration):
        tracker = IngestionTracker(engine=mock_engine)
        orch = IngestionOrchestrator(
            mock_engine, configuration, tracker=tracker, show_progress=False
        )
        orch.prepare_schema()

        assert mock_engine.execute.call_count == len(orch.tables.create_statements()) + len(
            tracker.create_statements()
        )

    def test_missing_postgis_is_fatal(self, mock_engine, configuration):
        mock_engine.has_extension.return_value = False
        orch = IngestionOrchestrator(mock_engine, configuration, show_progress=False)
        with pytest.raises(FatalIngestError, match="postgis"):
            orch.prepare_schema()
        mock_engine.execute.assert_not_called()

    def test_unreachable_store_is_fatal(self, mock_engine, configuration):
        mock_engine.has_extension.side_effect = psycopg2.OperationalError("could not connect")
        orch = IngestionOrchestrator(mock_engine, configuration, show_progress=False)
        with pytest.raises(FatalIngestError) as excinfo:
            orch.prepare_schema()
        assert isinstance(excinfo.value.__cause__, psycopg2.OperationalError)

    def test_defaults(self, mock_engine, configuration):
        orch = IngestionOrchestrator(mock_engine, configuration)
        assert isinstance(orch.splitter, WholeWaySplitter)
        assert orch.tracker.engine is None
        assert orch.config.chunk_size == 20000


class TestIngestPbf:
    @pytest.fixture()
    def pbf_with_crossing(self, tmp_path: Path) -> Path:
        fp = tmp_path / "crossing.osm.pbf"
        with osmium.SimpleWriter(str(fp)) as w:
            w.add_node(OsmNode(id=1, location=(0.0, 0.0)))
            w.add_node(OsmNode(id=2, location=(1.0, 0.0)))
            w.add_node(OsmNode(id=3, location=(2.0, 0.0)))
            w.add_node(OsmNode(id=4, location=(1.0, 1.0)))
            w.add_way(OsmWay(id=10, nodes=[1, 2, 3], tags={"highway": "residential"}))
            w.add_way(OsmWay(id=11, nodes=[2, 4], tags={"highway": "residential"}))
        return fp

    def test_parses_splits_and_ingests(self, pbf_with_crossing, configuration):
        engine = MagicMock()
        with (
            patch.object(IngestionOrchestrator, "prepare_schema", autospec=True) as prepare,
            patch.object(IngestionOrchestrator, "ingest", autospec=True) as ingest,
        ):
            ingest_pbf(engine, pbf_with_crossing, configuration, drop_existing=True)

        prepare.assert_called_once()
        assert prepare.call_args.kwargs == {"drop_existing": True, "include_osm": False}

        orch, ways = ingest.call_args.args
        assert [w.osm_id for w in ways] == [10, 11]
        assert isinstance(orch.splitter, NodeUsageSplitter)
        assert len(orch.splitter.split(ways[0])) == 2
        assert ingest.call_args.kwargs["metadata"] == {
            "source_file": "crossing.osm.pbf",
            "ways_parsed": 2,
            "ways_failed": 0,
        }

    def test_raw_osm_export(self, pbf_with_crossing, configuration):
        engine = MagicMock()
        with (
            patch.object(IngestionOrchestrator, "prepare_schema", autospec=True) as prepare,
            patch.object(IngestionOrchestrator, "ingest", autospec=True) as ingest,
            patch("roadgraph.ingest.orchestrator.export_osm_elements") as export,
        ):
            export.return_value = {"osm_nodes": 0, "osm_ways": 2, "osm_relations": 0}
            ingest_pbf(engine, pbf_with_crossing, configuration, export_osm=True)

        assert prepare.call_args.kwargs == {"drop_existing": False, "include_osm": True}
        orch = ingest.call_args.args[0]
        export.assert_called_once_with(
            engine, pbf_with_crossing, orch.tables, location_storage="flex_mem"
        )
        assert ingest.call_args.kwargs["metadata"]["osm_exported"]["osm_ways"] == 2

    def test_raw_osm_export_off_by_default(self, pbf_with_crossing, configuration):
        with (
            patch.object(IngestionOrchestrator, "prepare_schema", autospec=True),
            patch.object(IngestionOrchestrator, "ingest", autospec=True) as ingest,
            patch("roadgraph.ingest.orchestrator.export_osm_elements") as export,
        ):
            ingest_pbf(MagicMock(), pbf_with_crossing, configuration)

        export.assert_not_called()
        assert "osm_exported" not in ingest.call_args.kwargs["metadata"]
