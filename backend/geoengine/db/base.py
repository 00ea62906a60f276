"""Shared plumbing for the PostgreSQL repositories."""

from __future__ import annotations

import contextlib
from typing import TYPE_CHECKING, cast

import psycopg2
import psycopg2.extensions
import psycopg2.extras

if TYPE_CHECKING:
    from collections.abc import Iterator

    from geoengine.core import config


def cast_optional[T](  # type: ignore[misc]
    value: object,
    dtype: type[T],
) -> T | None:
    """Cast a value to a specific type, returning None if value is None."""
    if value is None:
        return None

    return cast(T, value)


class PostgresRepository:
    """Connection handling shared by the PostgreSQL repositories.

    Subclasses set ``CREATE_TABLE_SQL``; ``ensure_schema`` creates the
    PostGIS extension and that table. Building a repository never opens
    a connection.
    """

    CREATE_TABLE_SQL = ""

    def __init__(self, settings: config.Settings) -> None:
        """Initialize repository with database settings.

        Args:
            settings: Application settings containing database connection URL.
        """
        self.settings = settings

    @contextlib.contextmanager
    def _connection(self) -> Iterator[psycopg2.extensions.connection]:
        """Open a connection for one unit of work.

        The inner ``with conn`` ends the transaction (commit, or rollback
        on error); ``closing`` then releases the connection itself.

        Yields:
            psycopg2 connection object.
        """
        with contextlib.closing(
            psycopg2.connect(self.settings.database_url)
        ) as conn, conn:
            yield conn

    def _cursor(
        self,
        conn: psycopg2.extensions.connection,
    ) -> psycopg2.extensions.cursor:
        """Open a cursor whose rows are dictionaries keyed by column."""
        return conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)

    def ensure_schema(self) -> None:
        """Ensure the PostGIS extension and this repository's table exist."""
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute("CREATE EXTENSION IF NOT EXISTS postgis;")
            cur.execute(self.CREATE_TABLE_SQL)
            conn.commit()
