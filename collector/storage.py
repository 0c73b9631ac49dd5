"""Persistence of logged requests.

A batch is written as a single multi-row ``INSERT ... VALUES (...), (...)``
built with SQLAlchemy Core, so every value is a bound parameter and the
statement never contains client data.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Integer,
    MetaData,
    SmallInteger,
    String,
    Table,
    create_engine,
    insert,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.dml import Insert

from collector.config import Settings
from collector.errors import StorageError

logger = logging.getLogger(__name__)

MAX_INSERT = 2000

metadata = MetaData()

requests_table = Table(
    "requests",
    metadata,
    Column(
        "request_id",
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    ),
    Column("api_key", String(255), nullable=False, index=True),
    Column("path", String(255), nullable=False),
    Column("hostname", String(255), nullable=False),
    Column("ip_address", String(64), nullable=False),
    Column("user_agent", String(255), nullable=False),
    Column("status", SmallInteger, nullable=False),
    Column("response_time", Integer, nullable=False),
    Column("method", SmallInteger, nullable=False),
    Column("framework", SmallInteger, nullable=False),
    Column("location", String(2), nullable=False),
    Column("user_id", String(255), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

# Column order of each VALUES group and of BatchInsert.arguments
COLUMNS = (
    "api_key",
    "path",
    "hostname",
    "ip_address",
    "user_agent",
    "status",
    "response_time",
    "method",
    "framework",
    "location",
    "user_id",
    "created_at",
)


@dataclass(frozen=True)
class StoredRow:
    """A validated, redacted request ready to be written."""

    path: str
    hostname: str
    ip_address: str
    user_agent: str
    status: int
    response_time: int
    method: int
    location: str
    user_id: str
    created_at: datetime

    def values(self, api_key: str, framework: int) -> dict[str, Any]:
        row = asdict(self)
        row["api_key"] = api_key
        row["framework"] = framework
        return {column: row[column] for column in COLUMNS}


@dataclass
class BatchInsert:
    statement: Insert
    rows: list[dict[str, Any]]

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def arguments(self) -> list[Any]:
        """Bound values flattened in placeholder order, for logging and inspection."""
        return [row[column] for row in self.rows for column in COLUMNS]


def build_batch_insert(
    rows: Sequence[StoredRow],
    api_key: str,
    framework: int,
    max_rows: int = MAX_INSERT,
) -> BatchInsert:
    """Build one multi-row insert for at most ``max_rows`` rows.

    Rows past the ceiling are left out. Input order is kept.
    """
    kept = rows[:max_rows]
    if not kept:
        raise ValueError("Cannot build an insert without rows")

    values = [row.values(api_key, framework) for row in kept]
    statement = insert(requests_table).values(values)
    return BatchInsert(statement=statement, rows=values)


class StorageGateway:
    """Runs batch inserts against the request store."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def execute(self, batch: BatchInsert) -> int:
        """Write ``batch`` in its own transaction and return the rows affected.

        A pooled connection is checked out for the call and returned whether
        the insert succeeds or fails.

        Raises:
            StorageError: If the database rejects the insert or is unreachable.
        """
        try:
            with self.engine.begin() as conn:
                result = conn.execute(batch.statement)
                return result.rowcount
        except SQLAlchemyError as e:
            raise StorageError() from e

    def create_tables(self) -> None:
        """Create the requests table. Development and tests only."""
        metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()


def create_gateway(settings: Settings) -> StorageGateway:
    options: dict[str, Any] = {"pool_pre_ping": True}
    if not settings.DATABASE_URL.startswith("sqlite"):
        options.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_timeout=settings.DATABASE_POOL_TIMEOUT,
        )
    engine = create_engine(settings.DATABASE_URL, **options)
    logger.info(f"Storage engine created for {engine.url.render_as_string(hide_password=True)}")
    return StorageGateway(engine)
