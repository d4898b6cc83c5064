from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from roadgraph.ingest.exceptions import ErrorKind


class ChunkStatus(str, Enum):
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    EMPTY = "empty"


@dataclass
class ChunkResult:
    """Outcome of one chunk; ``start``/``stop`` index the run's way sequence."""

    index: int
    start: int
    stop: int
    status: ChunkStatus
    ways_skipped: int = 0
    rows_staged: int = 0
    duplicates_removed: int = 0
    vertices_added: int = 0
    edges_added: int = 0
    resolve_passes: int = 0
    error_kind: ErrorKind | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status != ChunkStatus.ROLLED_BACK
