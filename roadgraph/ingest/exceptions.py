from __future__ import annotations

from enum import Enum

import psycopg2


class ErrorKind(str, Enum):
    CONNECTION = "connection"
    CONSTRAINT = "constraint"
    TOPOLOGY = "topology"
    DATABASE = "database"


class IngestError(Exception):
    """Base class for graph ingestion errors."""


class FatalIngestError(IngestError):
    """The run cannot proceed; the caller should terminate."""


class MalformedTagError(IngestError):
    """A way has no usable tag classification and is skipped."""


class TopologyError(IngestError):
    """Staged endpoints could not be resolved to vertices."""


CONNECTION_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)
CONSTRAINT_ERRORS = (psycopg2.IntegrityError, psycopg2.DataError)

# Errors that abort the current chunk but let the run continue.
CHUNK_ERRORS = (psycopg2.Error, TopologyError)


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, TopologyError):
        return ErrorKind.TOPOLOGY
    if isinstance(exc, CONNECTION_ERRORS):
        return ErrorKind.CONNECTION
    if isinstance(exc, CONSTRAINT_ERRORS):
        return ErrorKind.CONSTRAINT
    return ErrorKind.DATABASE
