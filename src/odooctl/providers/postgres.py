"""PostgreSQL provider for instance roles and databases."""
from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

import psycopg2
from psycopg2 import sql

from ..errors import DatabaseError

SYSTEM_DATABASES = frozenset({"postgres", "template0", "template1"})


class PostgresError(DatabaseError):
    """Raised when a PostgreSQL role or database operation fails."""


@dataclass(slots=True)
class PostgresProvider:
    """Administer instance roles over a psycopg2 autocommit connection.

    ``user`` of ``None`` lets libpq pick the current OS user, which together
    with peer authentication on the local socket avoids storing a password.
    """

    host: str | None = None
    port: int = 5432
    user: str | None = None
    password: str | None = None
    dbname: str = "postgres"
    connect_timeout: int = 10
    connect: Callable[..., Any] = psycopg2.connect

    def role_exists(self, role: str) -> bool:
        """Return True when a role named *role* exists."""
        with self._cursor() as cursor:
            cursor.execute("SELECT 1 FROM pg_roles WHERE rolname = %s", (role,))
            return cursor.fetchone() is not None

    def create_role(self, role: str, password: str) -> None:
        """Create a login role allowed to create databases.

        Raises :class:`PostgresError` when the role already exists.
        """
        if self.role_exists(role):
            raise PostgresError(f"Database role '{role}' already exists.")
        statement = sql.SQL("CREATE ROLE {} WITH LOGIN CREATEDB PASSWORD {}").format(
            sql.Identifier(role), sql.Literal(password)
        )
        with self._cursor() as cursor:
            cursor.execute(statement)

    def databases_owned_by(self, role: str) -> list[str]:
        """Return the names of every database owned by *role*."""
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT d.datname FROM pg_database d "
                "JOIN pg_roles r ON d.datdba = r.oid "
                "WHERE r.rolname = %s ORDER BY d.datname",
                (role,),
            )
            return [row[0] for row in cursor.fetchall()]

    def terminate_connections(self, database: str) -> int:
        """Terminate other sessions connected to *database*; return their count."""
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                "WHERE datname = %s AND pid <> pg_backend_pid()",
                (database,),
            )
            return len(cursor.fetchall())

    def drop_database(self, database: str) -> None:
        """Drop *database* if it exists."""
        if database in SYSTEM_DATABASES or database == self.dbname:
            raise PostgresError(f"Refusing to drop system database '{database}'.")
        with self._cursor() as cursor:
            cursor.execute(sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(database)))

    def drop_role(self, role: str) -> None:
        """Drop *role* if it exists."""
        with self._cursor() as cursor:
            cursor.execute(sql.SQL("DROP ROLE IF EXISTS {}").format(sql.Identifier(role)))

    def is_system_database(self, database: str) -> bool:
        """Return True for databases remove must never drop."""
        return database in SYSTEM_DATABASES or database == self.dbname

    # ------------------------------------------------------------------
    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        params: dict[str, object] = {
            "dbname": self.dbname,
            "port": self.port,
            "connect_timeout": self.connect_timeout,
        }
        if self.host:
            params["host"] = self.host
        if self.user:
            params["user"] = self.user
        if self.password:
            params["password"] = self.password
        try:
            connection = self.connect(**params)
        except psycopg2.Error as exc:
            raise PostgresError(f"Cannot connect to PostgreSQL: {exc}") from exc
        try:
            connection.autocommit = True
            with connection.cursor() as cursor:
                yield cursor
        except psycopg2.Error as exc:
            message = (getattr(exc, "pgerror", None) or str(exc)).strip()
            raise PostgresError(f"PostgreSQL operation failed: {message}") from exc
        finally:
            connection.close()


__all__ = ["PostgresError", "PostgresProvider", "SYSTEM_DATABASES"]
