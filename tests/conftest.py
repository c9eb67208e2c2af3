"""Shared Postgres fixtures for integration and E2E tests.

The fixtures create a temporary test database, run the schema, and clean up
on teardown.  Tests that need Postgres should use the ``db_url``, ``db_conn``
or ``catalog`` fixtures and be marked with ``@pytest.mark.postgres``.

Connection target:
    DATABASE_URL_TEST env var, default ``postgresql://localhost:5433/postgres``.
"""

from __future__ import annotations

import os
import uuid
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import psycopg
import pytest
from psycopg import sql

from catalog_identity.normalize import lookup_key, normalize_title

ADMIN_URL = os.environ.get("DATABASE_URL_TEST", "postgresql://localhost:5433/postgres")
SCHEMA_FILE = Path(__file__).parent.parent / "schema" / "create_database.sql"

CATALOG_TABLES = (
    "identity_group_members",
    "identity_groups",
    "product_performers",
    "performer_aliases",
    "performers",
    "performer_lookup",
    "product_sales",
    "product_reviews",
    "product_videos",
    "product_images",
    "product_sources",
    "products",
)


def _postgres_available() -> bool:
    """Return True if we can connect to the test Postgres instance."""
    try:
        conn = psycopg.connect(ADMIN_URL, connect_timeout=3, autocommit=True)
        conn.close()
        return True
    except psycopg.OperationalError:
        return False


def _database_url(db_name: str) -> str:
    base = ADMIN_URL.rsplit("/", 1)[0]
    return f"{base}/{db_name}"


def create_test_database(prefix: str) -> tuple[str, str]:
    """Create a database with the catalog schema; return (name, url)."""
    db_name = f"{prefix}_{uuid.uuid4().hex[:8]}"
    with psycopg.connect(ADMIN_URL, autocommit=True) as admin_conn:
        admin_conn.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(db_name)))
    test_url = _database_url(db_name)
    with psycopg.connect(test_url, autocommit=True) as conn:
        conn.execute(SCHEMA_FILE.read_text())
    return db_name, test_url


def drop_test_database(db_name: str) -> None:
    with psycopg.connect(ADMIN_URL, autocommit=True) as admin_conn:
        # Force-disconnect any remaining connections first.
        admin_conn.execute(
            sql.SQL(
                "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                "WHERE datname = {} AND pid <> pg_backend_pid()"
            ).format(sql.Literal(db_name))
        )
        admin_conn.execute(sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(db_name)))


@pytest.fixture(scope="module")
def db_url():
    """Create a temporary test database, yield its URL, and drop it on teardown.

    Skips the entire module if Postgres is not reachable.
    """
    if not _postgres_available():
        pytest.skip("PostgreSQL not available (set DATABASE_URL_TEST)")

    db_name, test_url = create_test_database("catalog_test")
    yield test_url
    drop_test_database(db_name)


@pytest.fixture()
def db_conn(db_url):
    """Provide an autocommit connection to an emptied test database."""
    conn = psycopg.connect(db_url, autocommit=True)
    conn.execute(
        sql.SQL("TRUNCATE {} RESTART IDENTITY CASCADE").format(
            sql.SQL(", ").join(sql.Identifier(t) for t in CATALOG_TABLES)
        )
    )
    yield conn
    conn.close()


class CatalogBuilder:
    """Insert catalog rows the way ingestion leaves them."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn
        self._created = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def product(
        self,
        normalized_id: str,
        asp_name: str,
        title: str,
        maker_code: str | None = None,
        release_date: date | None = None,
        duration: int | None = None,
        performers: tuple[str, ...] = (),
        original_product_id: str | None = None,
        price: int | None = None,
        created_at: datetime | None = None,
    ) -> int:
        """Insert a product with one source row and optional performer links.

        Creation timestamps increase with each insert unless given.
        """
        if created_at is None:
            self._created += timedelta(minutes=1)
            created_at = self._created
        with self.conn.cursor() as cur:
            cur.execute(
                "INSERT INTO products (normalized_product_id, maker_product_code, title,"
                " normalized_title, release_date, duration, created_at)"
                " VALUES (%s, %s, %s, %s, %s, %s, %s) RETURNING id",
                (
                    normalized_id,
                    maker_code,
                    title,
                    normalize_title(title) or None,
                    release_date,
                    duration,
                    created_at,
                ),
            )
            product_id = cur.fetchone()[0]
            cur.execute(
                "INSERT INTO product_sources (product_id, asp_name, original_product_id, price)"
                " VALUES (%s, %s, %s, %s)",
                (product_id, asp_name, original_product_id, price),
            )
        for name in performers:
            self.link(product_id, self.performer(name))
        return product_id

    def performer(self, name: str, release_count: int = 0) -> int:
        with self.conn.cursor() as cur:
            cur.execute(
                "INSERT INTO performers (name, release_count) VALUES (%s, %s)"
                " ON CONFLICT (name) DO UPDATE SET name = EXCLUDED.name RETURNING id",
                (name, release_count),
            )
            return cur.fetchone()[0]

    def link(self, product_id: int, performer_id: int) -> None:
        self.conn.execute(
            "INSERT INTO product_performers (product_id, performer_id) VALUES (%s, %s)"
            " ON CONFLICT DO NOTHING",
            (product_id, performer_id),
        )

    def alias(self, performer_id: int, alias_name: str, source: str = "manual") -> None:
        self.conn.execute(
            "INSERT INTO performer_aliases (performer_id, alias_name, source) VALUES (%s, %s, %s)",
            (performer_id, alias_name, source),
        )

    def lookup(self, code: str, performer_name: str, source: str = "wiki") -> None:
        self.conn.execute(
            "INSERT INTO performer_lookup"
            " (product_code, product_code_normalized, performer_name, source)"
            " VALUES (%s, %s, %s, %s)",
            (code, lookup_key(code), performer_name, source),
        )

    def images(self, product_id: int, count: int) -> None:
        for i in range(count):
            self.conn.execute(
                "INSERT INTO product_images (product_id, image_url) VALUES (%s, %s)",
                (product_id, f"https://img.example/{product_id}/{i}.jpg"),
            )

    def reviews(self, product_id: int, ratings: list[float]) -> None:
        for rating in ratings:
            self.conn.execute(
                "INSERT INTO product_reviews (product_id, rating) VALUES (%s, %s)",
                (product_id, rating),
            )

    def scalar(self, query: str, params: tuple = ()):
        with self.conn.cursor() as cur:
            cur.execute(query, params)
            row = cur.fetchone()
        return None if row is None else row[0]

    def rows(self, query: str, params: tuple = ()) -> list[tuple]:
        with self.conn.cursor() as cur:
            cur.execute(query, params)
            return cur.fetchall()


@pytest.fixture()
def catalog(db_conn):
    """Row builder bound to an emptied test database."""
    return CatalogBuilder(db_conn)
