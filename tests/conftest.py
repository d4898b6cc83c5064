from __future__ import annotations

import pytest
from psycopg2 import sql


def render_sql(statement) -> str:
    """Flatten a psycopg2.sql composable to text without a connection."""
    if isinstance(statement, str):
        return statement
    if isinstance(statement, sql.Composed):
        return "".join(render_sql(part) for part in statement.seq)
    if isinstance(statement, sql.SQL):
        return statement.string
    if isinstance(statement, sql.Identifier):
        return ".".join(f'"{s}"' for s in statement.strings)
    if isinstance(statement, sql.Literal):
        return str(statement.wrapped)
    if isinstance(statement, sql.Placeholder):
        return f"%({statement.name})s" if statement.name else "%s"
    raise TypeError(f"Cannot render {statement!r}")


@pytest.fixture
def render():
    return render_sql


@pytest.fixture
def executed_sql():
    """Rendered text of every statement passed to a mock cursor's execute()."""

    def _executed(mock_cursor) -> list[str]:
        return [
            render_sql(call_args[0][0])
            for call_args in mock_cursor.execute.call_args_list
            if call_args[0]
        ]

    return _executed
