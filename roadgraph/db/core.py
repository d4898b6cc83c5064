import io
import logging
import os
import re
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Optional

import pandas as pd
import psycopg2

from psycopg2 import sql
from psycopg2.extensions import connection as Psycopg2Connection
from psycopg2.extensions import cursor as Psycopg2Cursor
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)


def get_logger(
    name: str,
    level: int = logging.INFO,
    log_format: Optional[str] = None,
) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        return logger

    log_format = log_format or "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = logging.Formatter(log_format)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


def parse_env_file(env_path: str | Path) -> dict[str, str]:
    env_vars = {}
    path = Path(env_path)

    if not path.exists():
        return env_vars

    with open(path, "r") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue

            match = re.match(r"^([A-Za-z_][A-Za-z0-9_]*)=(.*)$", line)
            if match:
                key, value = match.groups()
                value = value.strip()
                if (value.startswith('"') and value.endswith('"')) or (
                    value.startswith("'") and value.endswith("'")
                ):
                    value = value[1:-1]
                env_vars[key] = value

    return env_vars


@dataclass
class DatabaseCredentials:
    host: str
    port: int
    database: str
    username: str
    password: str
    driver: str = "postgresql"

    @classmethod
    def from_env_file(
        cls, env_path: str | Path, prefix: str, driver: str = "postgresql"
    ) -> "DatabaseCredentials":
        """
        Load credentials from a .env file using variables matching a prefix pattern.

        Expected variables:
            prefix_HOST, prefix_PORT, prefix_DATABASE, prefix_USER,
            prefix_PASSWORD, prefix_DRIVER (optional)
        """
        env_vars = parse_env_file(env_path)

        def get_var(name: str, default: Optional[str] = None) -> str:
            key = f"{prefix}{name}"
            value = env_vars.get(key) or os.environ.get(key) or default
            if value is None:
                raise ValueError(f"Missing required environment variable: {key}")
            return value

        return cls(
            host=get_var("HOST"),
            port=int(get_var("PORT", "5432")),
            database=get_var("DATABASE"),
            username=get_var("USER"),
            password=get_var("PASSWORD"),
            driver=get_var("DRIVER", driver),
        )

    @property
    def redacted_connection_string(self) -> str:
        return f"{self.driver}://{self.username}:****@****:{self.port}/{self.database}"

    def __str__(self) -> str:
        return (
            f"DatabaseCredentials(driver={self.driver!r}, "
            f"host='****', port={self.port}, database={self.database!r}, "
            f"username={self.username!r}, password='****')"
        )

    def __repr__(self) -> str:
        return self.__str__()


def pg_retry():
    return retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(
            (psycopg2.OperationalError, psycopg2.InterfaceError)
        ),
        reraise=True,
    )


class UnitOfWork:
    """
    One database transaction shared by every statement of an ingestion chunk.

    Created by PostgresEngine.unit_of_work(). Statements run through
    ``cursor``; ``commit()`` ends the unit successfully. Leaving the
    context without committing, or with an exception, rolls back.
    """

    def __init__(self, engine: "PostgresEngine") -> None:
        self._engine = engine
        self._conn = engine.connection
        self.cursor: Psycopg2Cursor = self._conn.cursor()
        self.committed = False

    def commit(self) -> None:
        self._conn.commit()
        self.committed = True

    def rollback(self) -> None:
        if self._conn.closed:
            self._engine.logger.warning("Connection lost, nothing to roll back")
            return
        try:
            self._conn.rollback()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            self._engine.logger.warning("Rollback failed on a broken connection: %s", e)

    def close(self) -> None:
        if not self.cursor.closed:
            self.cursor.close()


class PostgresEngine:
    """
    Explicit store session for the graph pipeline.

    Holds one lazily-opened psycopg2 connection and hands it to callers
    either as short self-committing statements (execute, query,
    ingest_batch) or as a UnitOfWork spanning many statements.
    """

    def __init__(
        self, creds: DatabaseCredentials, db_name: Optional[str] = None
    ) -> None:
        self.creds = creds
        self.db_name = db_name or creds.database
        self._conn: Optional[Psycopg2Connection] = None
        self.logger = get_logger("postgres_engine")

    @classmethod
    def from_dsn(cls, dsn: str) -> "PostgresEngine":
        params = psycopg2.extensions.parse_dsn(dsn)
        return cls(
            DatabaseCredentials(
                host=params.get("host", "localhost"),
                port=int(params.get("port", 5432)),
                database=params["dbname"],
                username=params.get("user", ""),
                password=params.get("password", ""),
            )
        )

    def _connect(self) -> Psycopg2Connection:
        self.logger.info("Connecting to %s", self.creds.redacted_connection_string)
        return psycopg2.connect(
            host=self.creds.host,
            port=self.creds.port,
            dbname=self.db_name,
            user=self.creds.username,
            password=self.creds.password,
        )

    @contextmanager
    def transaction(self):
        try:
            yield self.connection
            self.connection.commit()
        except Exception as e:
            self.logger.error(f"Transaction failed with error {e}")
            self.connection.rollback()
            raise

    @contextmanager
    def cursor(self):
        with self.transaction():
            cur = self.connection.cursor()
            try:
                yield cur
            finally:
                cur.close()

    @contextmanager
    def unit_of_work(self) -> Iterator[UnitOfWork]:
        """
        Yield a UnitOfWork whose statements share a single transaction.

        Rolls back when the block raises or exits without commit().
        """
        unit = UnitOfWork(self)
        try:
            yield unit
            if not unit.committed:
                unit.rollback()
        except Exception:
            unit.rollback()
            raise
        finally:
            unit.close()

    @property
    def connection(self) -> Psycopg2Connection:
        if self._conn is None or self._conn.closed:
            self._conn = self._connect()
        return self._conn

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            self._conn.close()
            self._conn = None

    @pg_retry()
    def query(
        self,
        statement: str | sql.Composable,
        params: dict[str, Any] | tuple | None = None,
    ) -> pd.DataFrame:
        """
        Execute a SELECT and return results as a DataFrame.

        Args:
            statement: SQL string or psycopg2.sql composable. Use %(name)s for
                    named params or %s for positional.
            params: Dict for named params, tuple for positional, or None.
        """
        with self.cursor() as cur:
            cur.execute(statement, params)
            columns = [desc[0] for desc in cur.description]
            return pd.DataFrame(cur.fetchall(), columns=columns)

    def execute(
        self,
        statement: str | sql.Composable,
        params: dict[str, Any] | tuple | None = None,
    ) -> int:
        """
        Execute a DDL/DML statement (no result set) in its own transaction.

        Returns the statement's rowcount.
        """
        try:
            with self.cursor() as cur:
                cur.execute(statement, params)
                return cur.rowcount
        except Exception as e:
            self.logger.error(f"Command failed with error {e}")
            raise

    def has_extension(self, name: str) -> bool:
        df = self.query(
            "select 1 from pg_extension where extname = %(name)s",
            {"name": name},
        )
        return len(df) == 1

    def ingest_batch(
        self,
        rows: list[dict[str, Any]],
        target_table: str,
        target_schema: str,
        conflict_column: str | list[str] | None = None,
    ) -> int:
        """
        Bulk insert a list of dicts into *target_table* using COPY
        via a staging table.

        Args:
            rows:              List of dicts to insert.
            target_table:      Table name.
            target_schema:     Schema name.
            conflict_column:   Column name (str) or list of column names.
                               Conflicting rows are skipped.

        Returns:
            Number of rows inserted.
        """
        if not rows:
            return 0
        fqn = sql.Identifier(target_schema, target_table)
        columns = list(rows[0].keys())
        col_list = sql.SQL(", ").join(sql.Identifier(c) for c in columns)

        if isinstance(conflict_column, str):
            conflict_columns = [conflict_column]
        else:
            conflict_columns = conflict_column

        with self.cursor() as cur:
            cur.execute(
                sql.SQL(
                    "create temp table _staging (like {} including defaults) "
                    "on commit drop"
                ).format(fqn)
            )
            cur.copy_expert(
                sql.SQL(
                    "copy _staging ({}) from stdin with (format text, NULL '\\N')"
                ).format(col_list),
                rows_to_copy_buffer(rows, columns),
            )

            insert_sql = sql.SQL("insert into {} ({}) select {} from _staging").format(
                fqn, col_list, col_list
            )
            if conflict_columns:
                insert_sql += sql.SQL(" on conflict ({}) do nothing").format(
                    sql.SQL(", ").join(sql.Identifier(c) for c in conflict_columns)
                )

            cur.execute(insert_sql)
            count = cur.rowcount

        self.logger.info("Inserted %d rows into %s.%s", count, target_schema, target_table)
        return count

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


# COPY text format escapes
COPY_ESCAPES = str.maketrans({"\\": "\\\\", "\t": "\\t", "\n": "\\n", "\r": "\\r"})


def copy_value(value: Any) -> str:
    if value is None:
        return "\\N"
    return str(value).translate(COPY_ESCAPES)


def rows_to_copy_buffer(
    rows: list[dict[str, Any]],
    columns: list[str],
    end_marker: bool = False,
) -> io.StringIO:
    """
    Render rows in COPY text format.

    With ``end_marker`` the stream is closed by the ``\\.`` end-of-data line.
    """
    buf = io.StringIO()
    for row in rows:
        buf.write("\t".join(copy_value(row.get(c)) for c in columns) + "\n")
    if end_marker:
        buf.write("\\.\n")
    buf.seek(0)
    return buf
