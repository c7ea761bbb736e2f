"""PostgreSQL-backed storage for processed files and device messages."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from devreports.config import Config
from devreports.models import DeviceMessage, ProcessedFile

logger = logging.getLogger(__name__)

MAX_CONNECTIONS = 25
MIN_CONNECTIONS = 5
DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 100

metadata = MetaData()

processed_files = Table(
    "processed_files",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("file_name", String(255), nullable=False, unique=True),
    Column("status", String(50), nullable=False, server_default="processing"),
    Column("error_message", Text),
    Column("processed_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Index("idx_processed_files_status", "status"),
    Index("idx_processed_files_file_name", "file_name"),
    Index("idx_processed_files_processed_at", "processed_at"),
)

device_messages = Table(
    "device_messages",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("number", Integer),
    Column("mqtt", String(100)),
    Column("invid", String(50)),
    Column(
        "unit_guid",
        String(36).with_variant(PG_UUID(as_uuid=False), "postgresql"),
        nullable=False,
    ),
    Column("message_id", String(255), nullable=False),
    Column("message_text", Text),
    Column("context", String(100)),
    Column("message_class", String(50)),
    Column("level", Integer),
    Column("area", String(50)),
    Column("address", Text),
    Column("source_file", String(255)),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Index("idx_device_messages_unit_guid", "unit_guid"),
    Index("idx_device_messages_message_class", "message_class"),
    Index("idx_device_messages_created_at", "created_at"),
    Index("idx_device_messages_invid", "invid"),
    Index("idx_device_messages_source_file", "source_file"),
)

_MESSAGE_COLUMNS = (
    "number", "mqtt", "invid", "unit_guid", "message_id", "message_text",
    "context", "message_class", "level", "area", "address",
)


class RepositoryError(Exception):
    """Raised when a database operation fails."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_message(row: Any) -> DeviceMessage:
    mapping = row._mapping
    values = {name: mapping[name] for name in _MESSAGE_COLUMNS}
    for name in ("number", "level"):
        values[name] = values[name] or 0
    for name in _MESSAGE_COLUMNS:
        if values[name] is None:
            values[name] = ""
    values["unit_guid"] = str(values["unit_guid"])
    return DeviceMessage(**values)


def _row_to_processed_file(row: Any) -> ProcessedFile:
    mapping = row._mapping
    return ProcessedFile(
        id=mapping["id"],
        file_name=mapping["file_name"],
        status=mapping["status"],
        error_message=mapping["error_message"] or "",
        processed_at=mapping["processed_at"],
        created_at=mapping["created_at"],
    )


class Repository:
    """Reads and writes processed-file records and device messages."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._extra = {"component": "postgres_repository"}

    def _log_extra(self, **fields: Any) -> dict[str, Any]:
        return {**self._extra, **fields}

    def migrate(self) -> None:
        """Create the tables and indexes if they do not exist yet."""
        op = "postgres.migrate"
        logger.info("running database migrations", extra=self._log_extra(op=op))
        try:
            metadata.create_all(self._engine, checkfirst=True)
        except SQLAlchemyError as exc:
            logger.error("failed to run migrations", extra=self._log_extra(op=op, error=str(exc)))
            raise RepositoryError(f"{op}: migrations failed: {exc}") from exc
        logger.info("migrations completed successfully", extra=self._log_extra(op=op))

    def close(self) -> None:
        """Release every pooled connection."""
        logger.info("closing database connection pool", extra=self._log_extra())
        self._engine.dispose()

    def ping(self) -> None:
        """Check that the database answers."""
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise RepositoryError(f"postgres.ping: {exc}") from exc

    def _upsert_status(self, conn: Connection, values: dict[str, Any]) -> None:
        changes = {
            "status": values["status"],
            "error_message": values["error_message"],
            "processed_at": values["processed_at"],
        }
        dialect = self._engine.dialect.name
        if dialect in ("postgresql", "sqlite"):
            builder = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = builder(processed_files).values(**values).on_conflict_do_update(
                index_elements=["file_name"], set_=changes
            )
            conn.execute(stmt)
            return
        result = conn.execute(
            update(processed_files)
            .where(processed_files.c.file_name == values["file_name"])
            .values(**changes)
        )
        if result.rowcount == 0:
            conn.execute(insert(processed_files).values(**values))

    def update_file_status(self, file_name: str, status: str, error_message: str) -> None:
        """Insert or update the status of a file."""
        op = "postgres.update_file_status"
        status = getattr(status, "value", status)
        extra = self._log_extra(op=op, file=file_name, status=status)
        logger.info("updating file status", extra=extra)

        values = {
            "file_name": file_name,
            "status": status,
            "error_message": error_message,
            "processed_at": _now(),
        }
        try:
            with self._engine.begin() as conn:
                self._upsert_status(conn, values)
        except SQLAlchemyError as exc:
            logger.error("failed to update file status", extra={**extra, "error": str(exc)})
            raise RepositoryError(f"{op}: {exc}") from exc

        logger.info("file status updated", extra=extra)

    def get_all_processed_files(self) -> list[ProcessedFile]:
        """Every tracked file, most recently processed first."""
        op = "postgres.get_all_processed_files"
        extra = self._log_extra(op=op)
        logger.info("getting all processed files", extra=extra)

        stmt = select(processed_files).order_by(processed_files.c.processed_at.desc())
        try:
            with self._engine.connect() as conn:
                files = [_row_to_processed_file(row) for row in conn.execute(stmt)]
        except SQLAlchemyError as exc:
            logger.error("failed to query processed files", extra={**extra, "error": str(exc)})
            raise RepositoryError(f"{op}: {exc}") from exc

        logger.info("processed files retrieved", extra={**extra, "count": len(files)})
        return files

    def is_file_processed(self, file_name: str) -> bool:
        """Whether the file has a record in any state."""
        op = "postgres.is_file_processed"
        extra = self._log_extra(op=op, file=file_name)
        logger.debug("checking if file is processed", extra=extra)

        stmt = (
            select(func.count())
            .select_from(processed_files)
            .where(processed_files.c.file_name == file_name)
        )
        try:
            with self._engine.connect() as conn:
                count = conn.execute(stmt).scalar_one()
        except SQLAlchemyError as exc:
            logger.error("failed to check file status", extra={**extra, "error": str(exc)})
            raise RepositoryError(f"{op}: {exc}") from exc

        logger.debug("file status checked", extra={**extra, "processed": count > 0})
        return count > 0

    def save_messages(self, messages: Iterable[DeviceMessage]) -> None:
        """Store a batch of messages in one transaction."""
        op = "postgres.save_messages"
        messages = list(messages)
        extra = self._log_extra(op=op, batch_size=len(messages))

        if not messages:
            logger.warning("no messages to save", extra=extra)
            return

        logger.info("saving messages to database", extra=extra)
        rows = [
            {**{name: getattr(msg, name) for name in _MESSAGE_COLUMNS}, "created_at": _now()}
            for msg in messages
        ]
        try:
            with self._engine.begin() as conn:
                conn.execute(insert(device_messages), rows)
        except SQLAlchemyError as exc:
            logger.error("failed to save messages", extra={**extra, "error": str(exc)})
            raise RepositoryError(f"{op}: {exc}") from exc

        logger.info("messages saved successfully", extra={**extra, "saved": len(messages)})

    def _message_query(self, unit_guid: str):
        columns = [device_messages.c[name] for name in _MESSAGE_COLUMNS]
        return (
            select(*columns, device_messages.c.created_at)
            .where(device_messages.c.unit_guid == unit_guid)
            .order_by(device_messages.c.created_at.desc())
        )

    def get_all_messages_by_unit_guid(self, unit_guid: str) -> list[DeviceMessage]:
        """All messages of a device, newest first."""
        op = "postgres.get_all_messages_by_unit_guid"
        extra = self._log_extra(op=op, unit_guid=unit_guid)
        logger.info("getting all messages for device", extra=extra)

        try:
            with self._engine.connect() as conn:
                messages = [
                    _row_to_message(row) for row in conn.execute(self._message_query(unit_guid))
                ]
        except SQLAlchemyError as exc:
            logger.error("failed to query messages", extra={**extra, "error": str(exc)})
            raise RepositoryError(f"{op}: {exc}") from exc

        logger.info("messages retrieved", extra={**extra, "count": len(messages)})
        return messages

    def get_messages_by_unit_guid_paginated(
        self, unit_guid: str, page: int, limit: int
    ) -> tuple[list[DeviceMessage], int]:
        """One page of a device's messages and the device's total message count."""
        op = "postgres.get_messages_by_unit_guid_paginated"
        extra = self._log_extra(op=op, unit_guid=unit_guid, page=page, limit=limit)
        logger.info("getting messages with pagination", extra=extra)

        if page < 1:
            page = 1
        if limit < 1 or limit > MAX_PAGE_LIMIT:
            limit = DEFAULT_PAGE_LIMIT
        offset = (page - 1) * limit

        count_stmt = (
            select(func.count())
            .select_from(device_messages)
            .where(device_messages.c.unit_guid == unit_guid)
        )
        page_stmt = self._message_query(unit_guid).limit(limit).offset(offset)

        try:
            with self._engine.connect() as conn:
                try:
                    total = conn.execute(count_stmt).scalar_one()
                except SQLAlchemyError as exc:
                    logger.error("failed to get total count", extra={**extra, "error": str(exc)})
                    raise RepositoryError(f"{op}: count query: {exc}") from exc
                messages = [_row_to_message(row) for row in conn.execute(page_stmt)]
        except SQLAlchemyError as exc:
            logger.error("failed to query messages", extra={**extra, "error": str(exc)})
            raise RepositoryError(f"{op}: {exc}") from exc

        logger.info(
            "messages retrieved with pagination",
            extra={
                **extra,
                "count": len(messages),
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        )
        return messages, total


def connect(config: Config) -> Repository:
    """Open a connection pool, check it, run migrations when configured."""
    op = "postgres.connect"
    db = config.database
    extra = {"op": op, "host": db.host, "port": db.port, "db": db.name}
    logger.info("initializing database connection pool", extra=extra)

    try:
        engine = create_engine(
            db.connection_string(),
            pool_size=MIN_CONNECTIONS,
            max_overflow=MAX_CONNECTIONS - MIN_CONNECTIONS,
            pool_pre_ping=True,
        )
    except (SQLAlchemyError, ImportError, ValueError) as exc:
        logger.error("failed to create connection pool", extra={**extra, "error": str(exc)})
        raise RepositoryError(f"{op}: {exc}") from exc

    repo = Repository(engine)
    try:
        repo.ping()
    except RepositoryError as exc:
        logger.error("failed to ping database", extra={**extra, "error": str(exc)})
        engine.dispose()
        raise RepositoryError(f"{op}: {exc}") from exc

    logger.info("database connection established", extra=extra)

    migrations_dir = config.migration.dir
    if not migrations_dir:
        logger.info("migrations directory not specified, skipping", extra=extra)
    elif os.path.exists(migrations_dir):
        try:
            repo.migrate()
        except RepositoryError as exc:
            engine.dispose()
            raise RepositoryError(f"{op}: {exc}") from exc
    else:
        logger.warning(
            "migrations directory does not exist, skipping",
            extra={**extra, "migrations_dir": migrations_dir},
        )

    return repo