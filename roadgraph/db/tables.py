"""
Graph table naming and DDL.

GraphTables turns the schema/prefix/suffix tunables into validated
psycopg2.sql identifiers and generates the statements that create the
routing tables:

  - configuration:      one row per configured tag class (class_id PK)
  - ways_vertices_pgr:  graph vertices, unique on osm_id
  - ways:               graph edges, source/target FK to the vertices

plus the chunk-scoped staging table used during ingestion.

Usage:
    tables = GraphTables(schema="routing", prefix="car_")
    for statement in tables.create_statements():
        engine.execute(statement)
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from psycopg2 import sql

from roadgraph.osm.types import OSM_ELEMENT_TYPES

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Columns written by the ingestion row builder, in COPY order.
STAGED_COLUMNS: tuple[str, ...] = (
    "class_id",
    "osm_id",
    "maxspeed_forward",
    "maxspeed_backward",
    "one_way",
    "priority",
    "length",
    "x1",
    "y1",
    "x2",
    "y2",
    "source_osm",
    "target_osm",
    "the_geom",
    "cost",
    "reverse_cost",
    "name",
)

# Columns filled in by topology resolution.
RESOLVED_COLUMNS: tuple[str, ...] = (
    "source",
    "target",
    "length_m",
    "cost_s",
    "reverse_cost_s",
)

CONFIGURATION_COLUMNS: tuple[str, ...] = (
    "class_id",
    "tag_key",
    "tag_value",
    "priority",
    "maxspeed",
    "maxspeed_forward",
    "maxspeed_backward",
)


def validate_identifier(name: str) -> str:
    if not IDENTIFIER_PATTERN.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


@dataclass(frozen=True)
class GraphTables:
    """
    Names and DDL for the routing graph tables.

    Parameters
    ----------
    schema : str
        Target schema. Default "public".
    prefix, suffix : str
        Added around the base names of the ways and vertex tables
        (e.g. prefix "car_" gives "car_ways" and "car_ways_vertices_pgr").
        The configuration table is not affected.
    srid : int
        Spatial reference ID for the geometry columns. Default 4326.
    """

    schema: str = "public"
    prefix: str = ""
    suffix: str = ""
    srid: int = 4326

    def __post_init__(self):
        validate_identifier(self.schema)
        validate_identifier(self.full_name("ways"))
        validate_identifier(self.full_name("ways_vertices_pgr"))

    def full_name(self, base: str) -> str:
        return f"{self.prefix}{base}{self.suffix}"

    @property
    def ways_name(self) -> str:
        return self.full_name("ways")

    @property
    def vertices_name(self) -> str:
        return self.full_name("ways_vertices_pgr")

    @property
    def configuration_name(self) -> str:
        return "configuration"

    @property
    def ways(self) -> sql.Identifier:
        return sql.Identifier(self.schema, self.ways_name)

    @property
    def vertices(self) -> sql.Identifier:
        return sql.Identifier(self.schema, self.vertices_name)

    @property
    def configuration(self) -> sql.Identifier:
        return sql.Identifier(self.schema, self.configuration_name)

    @property
    def qualified_ways_name(self) -> str:
        return f"{self.schema}.{self.ways_name}"

    # ------------------------------------------------------------------
    # DDL
    # ------------------------------------------------------------------

    def _edge_columns(self, resolved_nullable: bool) -> sql.Composed:
        not_null = sql.SQL("") if resolved_nullable else sql.SQL(" not null")
        return sql.SQL(
            """
            osm_id bigint,
            class_id integer not null,
            length double precision,
            length_m double precision,
            name text,
            source bigint{not_null},
            target bigint{not_null},
            source_osm bigint,
            target_osm bigint,
            cost double precision,
            reverse_cost double precision,
            cost_s double precision,
            reverse_cost_s double precision,
            one_way integer,
            maxspeed_forward double precision,
            maxspeed_backward double precision,
            priority double precision default 1,
            x1 double precision,
            y1 double precision,
            x2 double precision,
            y2 double precision,
            the_geom geometry(LineString, {srid})
            """
        ).format(not_null=not_null, srid=sql.Literal(self.srid))

    def create_configuration(self) -> sql.Composed:
        return sql.SQL(
            """
            create table if not exists {table} (
                class_id integer primary key,
                tag_key text not null,
                tag_value text not null,
                priority double precision,
                maxspeed double precision,
                maxspeed_forward double precision,
                maxspeed_backward double precision
            )
            """
        ).format(table=self.configuration)

    def create_vertices(self) -> sql.Composed:
        return sql.SQL(
            """
            create table if not exists {table} (
                id bigserial primary key,
                osm_id bigint not null,
                lon numeric(11, 8),
                lat numeric(11, 8),
                the_geom geometry(Point, {srid}),
                constraint {unique_name} unique (osm_id)
            )
            """
        ).format(
            table=self.vertices,
            srid=sql.Literal(self.srid),
            unique_name=sql.Identifier(f"{self.vertices_name}_osm_id_key"),
        )

    def create_ways(self) -> sql.Composed:
        return sql.SQL(
            """
            create table if not exists {table} (
                gid bigserial primary key,
                {columns},
                foreign key (class_id) references {configuration} (class_id),
                foreign key (source) references {vertices} (id),
                foreign key (target) references {vertices} (id)
            )
            """
        ).format(
            table=self.ways,
            columns=self._edge_columns(resolved_nullable=False),
            configuration=self.configuration,
            vertices=self.vertices,
        )

    def create_indexes(self) -> list[sql.Composed]:
        statements = [
            sql.SQL("create index if not exists {} on {} using gist (the_geom)").format(
                sql.Identifier(f"{self.vertices_name}_gdx"), self.vertices
            ),
            sql.SQL("create index if not exists {} on {} using gist (the_geom)").format(
                sql.Identifier(f"{self.ways_name}_gdx"), self.ways
            ),
        ]
        for column in ("source_osm", "target_osm", "source", "target"):
            statements.append(
                sql.SQL("create index if not exists {} on {} using btree ({})").format(
                    sql.Identifier(f"{self.ways_name}_{column}_idx"),
                    self.ways,
                    sql.Identifier(column),
                )
            )
        return statements

    def create_statements(self, include_osm: bool = False) -> list[sql.Composed]:
        """
        Statements creating every graph table and index, in dependency order.

        With ``include_osm`` the raw osm_nodes / osm_ways / osm_relations
        tables are created too.
        """
        statements = [
            sql.SQL("create schema if not exists {}").format(sql.Identifier(self.schema)),
            self.create_configuration(),
            self.create_vertices(),
            self.create_ways(),
            *self.create_indexes(),
        ]
        if include_osm:
            statements.extend(self.create_osm_tables())
        return statements

    def drop_statements(self, include_osm: bool = False) -> list[sql.Composed]:
        tables = [self.ways, self.vertices, self.configuration]
        if include_osm:
            tables.extend(self.osm_table(t) for t in OSM_ELEMENT_TYPES)
        return [sql.SQL("drop table if exists {} cascade").format(table) for table in tables]

    # ------------------------------------------------------------------
    # Raw OSM tables
    # ------------------------------------------------------------------

    def osm_table_name(self, element_type: str) -> str:
        if element_type not in OSM_ELEMENT_TYPES:
            raise ValueError(
                f"element_type must be one of {OSM_ELEMENT_TYPES}, got {element_type!r}"
            )
        return f"osm_{element_type}"

    def osm_table(self, element_type: str) -> sql.Identifier:
        return sql.Identifier(self.schema, self.osm_table_name(element_type))

    def create_osm_tables(self) -> list[sql.Composed]:
        """Unprefixed tables holding every exported OSM element with its tags as jsonb."""
        body = {
            "nodes": "tags jsonb, the_geom geometry(Point, {srid})",
            "ways": "tags jsonb, the_geom geometry(LineString, {srid})",
            "relations": "tags jsonb, members jsonb",
        }
        return [
            sql.SQL(
                "create table if not exists {table} (osm_id bigint primary key, " + body[t] + ")"
            ).format(table=self.osm_table(t), srid=sql.Literal(self.srid))
            for t in OSM_ELEMENT_TYPES
        ]

    def create_staging(self, staging_name: str) -> sql.Composed:
        """
        Temp table mirroring the ways table with nullable source/target.

        Dropped automatically when the enclosing transaction commits; a
        rollback undoes its creation.
        """
        validate_identifier(staging_name)
        return sql.SQL(
            """
            create temp table {table} (
                staging_id serial primary key,
                {columns}
            ) on commit drop
            """
        ).format(
            table=sql.Identifier(staging_name),
            columns=self._edge_columns(resolved_nullable=True),
        )
