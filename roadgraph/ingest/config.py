from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from roadgraph.db.core import parse_env_file
from roadgraph.db.tables import GraphTables


@dataclass
class IngestConfig:
    """
    Tunables for a graph ingestion run.

    Attributes:
        chunk_size:          Ways per chunk. A chunk is one transaction and
                             the unit of failure isolation.
        schema:              Schema holding the graph tables.
        prefix:              Prefix for the ways/vertices table names.
        suffix:              Suffix for the ways/vertices table names.
        srid:                SRID of the geometry columns.
        max_resolve_passes:  Upper bound on endpoint resolve passes per chunk.
                             Two passes always suffice for a well-formed chunk.
    """

    chunk_size: int = 20000
    schema: str = "public"
    prefix: str = ""
    suffix: str = ""
    srid: int = 4326
    max_resolve_passes: int = 4

    def __post_init__(self):
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be at least 1, got {self.chunk_size}")
        if self.max_resolve_passes < 2:
            raise ValueError(
                f"max_resolve_passes must be at least 2, got {self.max_resolve_passes}"
            )

    @classmethod
    def from_env_file(
        cls, env_path: str | Path, prefix: str = "ROADGRAPH_"
    ) -> "IngestConfig":
        """
        Load tunables from a .env file or the environment.

        Recognised variables (all optional):
            prefix_CHUNK_SIZE, prefix_SCHEMA, prefix_TABLE_PREFIX,
            prefix_TABLE_SUFFIX, prefix_SRID, prefix_MAX_RESOLVE_PASSES
        """
        env_vars = parse_env_file(env_path)
        defaults = cls()

        def get_var(name: str, default):
            key = f"{prefix}{name}"
            value = env_vars.get(key) or os.environ.get(key)
            return default if value is None else type(default)(value)

        return cls(
            chunk_size=get_var("CHUNK_SIZE", defaults.chunk_size),
            schema=get_var("SCHEMA", defaults.schema),
            prefix=get_var("TABLE_PREFIX", defaults.prefix),
            suffix=get_var("TABLE_SUFFIX", defaults.suffix),
            srid=get_var("SRID", defaults.srid),
            max_resolve_passes=get_var("MAX_RESOLVE_PASSES", defaults.max_resolve_passes),
        )

    def tables(self) -> GraphTables:
        return GraphTables(
            schema=self.schema, prefix=self.prefix, suffix=self.suffix, srid=self.srid
        )
