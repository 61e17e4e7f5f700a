"""
Source query services - the narrow interface the export pipeline pages over.

SourceQueryService is what the pipeline depends on. SqlAlchemySource is the
concrete implementation: every table behind a SQLAlchemy engine is an
exportable collection, filtered with textual expressions and ordered by its
single-column primary key.
"""

from threading import Lock
from typing import Dict, List, Optional, Protocol

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import Integer, MetaData, String, Table, func, inspect, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, NoSuchTableError, OperationalError, SQLAlchemyError

from bulk_export.exports.exceptions import (
    SchemaMismatchError,
    SourceNotFoundError,
    SourceQueryError,
    SourceUnavailableError,
)
from bulk_export.exports.models import ALL_FIELDS, KeyDescriptor, KeyKind, Page
from bulk_export.utils.logger import get_logger

logger = get_logger(__name__)


class SourceQueryService(Protocol):
    """Count, schema and filtered-scan capability of a backing store."""

    async def count(self, source_name: str, filter_expression: Optional[str] = None) -> int:
        ...

    async def describe_key_field(self, source_name: str) -> KeyDescriptor:
        ...

    async def query(
        self,
        source_name: str,
        filter_expression: Optional[str],
        limit: int,
        output_fields: List[str],
    ) -> Page:
        ...


class SqlAlchemySource:
    """
    SourceQueryService over a SQLAlchemy engine.

    Driver calls are blocking, so each one runs in the threadpool. Every call
    checks out its own connection and returns it before yielding results.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._tables: Dict[str, Table] = {}
        self._lock = Lock()

    async def exists(self, source_name: str) -> bool:
        return await run_in_threadpool(self._exists, source_name)

    async def count(self, source_name: str, filter_expression: Optional[str] = None) -> int:
        return await run_in_threadpool(self._count, source_name, filter_expression)

    async def describe_key_field(self, source_name: str) -> KeyDescriptor:
        return await run_in_threadpool(self._describe_key_field, source_name)

    async def query(
        self,
        source_name: str,
        filter_expression: Optional[str],
        limit: int,
        output_fields: List[str],
    ) -> Page:
        return await run_in_threadpool(
            self._query, source_name, filter_expression, limit, output_fields
        )

    def _exists(self, source_name: str) -> bool:
        try:
            return inspect(self.engine).has_table(source_name)
        except SQLAlchemyError as e:
            raise self._translate(source_name, e) from e

    def _count(self, source_name: str, filter_expression: Optional[str]) -> int:
        table = self._get_table(source_name)
        stmt = select(func.count()).select_from(table)
        if filter_expression:
            stmt = stmt.where(text(filter_expression))
        try:
            with self.engine.connect() as conn:
                return int(conn.execute(stmt).scalar_one())
        except SQLAlchemyError as e:
            raise self._translate(source_name, e) from e

    def _describe_key_field(self, source_name: str) -> KeyDescriptor:
        column = self._key_column(source_name, self._get_table(source_name))
        if isinstance(column.type, Integer):
            kind = KeyKind.INTEGER
        elif isinstance(column.type, String):
            kind = KeyKind.STRING
        else:
            raise SchemaMismatchError(
                source_name, f"key field '{column.name}' has unsupported type {column.type}"
            )
        return KeyDescriptor(
            field_name=column.name,
            kind=kind,
            filter_name=self.engine.dialect.identifier_preparer.quote(column.name),
        )

    def _query(
        self,
        source_name: str,
        filter_expression: Optional[str],
        limit: int,
        output_fields: List[str],
    ) -> Page:
        table = self._get_table(source_name)
        key_column = self._key_column(source_name, table)

        if ALL_FIELDS in output_fields:
            columns = list(table.columns)
        else:
            unknown = [name for name in output_fields if name not in table.columns]
            if unknown:
                raise SourceQueryError(source_name, f"unknown fields: {', '.join(unknown)}")
            columns = [table.columns[name] for name in output_fields]

        stmt = select(*columns).order_by(key_column.asc()).limit(limit)
        if filter_expression:
            stmt = stmt.where(text(filter_expression))

        try:
            with self.engine.connect() as conn:
                result = conn.execute(stmt)
                return [dict(row._mapping) for row in result]
        except SQLAlchemyError as e:
            raise self._translate(source_name, e) from e

    def _key_column(self, source_name: str, table: Table):
        pk_columns = list(table.primary_key.columns)
        if len(pk_columns) != 1:
            raise SchemaMismatchError(
                source_name, f"expected a single primary key column, found {len(pk_columns)}"
            )
        return pk_columns[0]

    def _get_table(self, source_name: str) -> Table:
        with self._lock:
            table = self._tables.get(source_name)
        if table is not None:
            return table

        try:
            table = Table(source_name, MetaData(), autoload_with=self.engine)
        except NoSuchTableError as e:
            raise SourceNotFoundError(source_name) from e
        except SQLAlchemyError as e:
            raise self._translate(source_name, e) from e

        with self._lock:
            self._tables.setdefault(source_name, table)
        logger.debug("Reflected source table", source=source_name, columns=len(table.columns))
        return table

    @staticmethod
    def _translate(source_name: str, error: SQLAlchemyError) -> SourceQueryError:
        """Map driver errors onto the export error kinds."""
        if isinstance(error, DBAPIError) and error.connection_invalidated:
            return SourceUnavailableError(source_name, str(error.orig))
        if isinstance(error, OperationalError) and _looks_like_connection_failure(error):
            return SourceUnavailableError(source_name, str(error.orig))
        return SourceQueryError(source_name, str(getattr(error, "orig", None) or error))


def _looks_like_connection_failure(error: OperationalError) -> bool:
    message = str(error.orig).lower()
    return any(
        marker in message
        for marker in ("unable to open", "could not connect", "connection refused", "server has gone away", "lost connection")
    )
