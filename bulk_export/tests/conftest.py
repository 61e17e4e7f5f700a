# bulk_export/tests/conftest.py

import re
from typing import Dict, List, Optional

import pytest
from sqlalchemy import JSON, Column, Integer, MetaData, String, Table, create_engine

from bulk_export.exports.exceptions import SinkWriteError, SourceUnavailableError
from bulk_export.exports.models import KeyDescriptor, KeyKind, ProgressEvent

_BOUND = re.compile(r"(\w+) > ('(?:[^']|'')*'|-?\d+)$")


class FakeSource:
    """
    In-memory SourceQueryService.

    Understands the trailing ``<key> > <literal>`` bound the pager appends and
    records every call. ``fail_on_query`` makes the n-th page query fail,
    ``reported_count`` lets count() disagree with the rows actually present.
    """

    def __init__(
        self,
        rows: List[Dict],
        key: KeyDescriptor,
        fail_on_query: Optional[int] = None,
        reported_count: Optional[int] = None,
    ):
        self.rows = sorted(rows, key=lambda r: r[key.field_name])
        self.key = key
        self.fail_on_query = fail_on_query
        self.reported_count = reported_count
        self.count_calls = 0
        self.queries: List[Dict] = []

    async def count(self, source_name, filter_expression=None):
        self.count_calls += 1
        if self.reported_count is not None:
            return self.reported_count
        return len(self.rows)

    async def describe_key_field(self, source_name):
        return self.key

    async def query(self, source_name, filter_expression, limit, output_fields):
        self.queries.append({
            "expr": filter_expression,
            "limit": limit,
            "fields": list(output_fields),
        })
        if self.fail_on_query == len(self.queries):
            raise SourceUnavailableError(source_name, "connection reset by peer")

        match = _BOUND.search(filter_expression)
        assert match and match.group(1) == self.key.field_name, filter_expression
        literal = match.group(2)
        if self.key.kind is KeyKind.STRING:
            bound = literal[1:-1].replace("''", "'")
        else:
            bound = int(literal)

        selected = [r for r in self.rows if r[self.key.field_name] > bound][:limit]
        if "*" in output_fields:
            return [dict(r) for r in selected]
        return [{f: r[f] for f in output_fields if f in r} for r in selected]


class MemoryTransport:
    """Transport collecting chunks in memory; can fail after n sends."""

    def __init__(self, fail_after: Optional[int] = None):
        self.chunks: List[bytes] = []
        self.closed = False
        self.fail_after = fail_after

    async def send(self, data: bytes) -> None:
        if self.closed:
            raise SinkWriteError("transport closed")
        if self.fail_after is not None and len(self.chunks) >= self.fail_after:
            raise SinkWriteError("client disconnected")
        self.chunks.append(data)

    async def aclose(self) -> None:
        self.closed = True

    @property
    def text(self) -> str:
        return b"".join(self.chunks).decode("utf-8")


class RecordingPublisher:
    """Progress publisher that keeps every event."""

    def __init__(self):
        self.events: List[ProgressEvent] = []

    def publish(self, event: ProgressEvent) -> None:
        self.events.append(event)


@pytest.fixture
def int_key():
    return KeyDescriptor(field_name="id", kind=KeyKind.INTEGER)


@pytest.fixture
def str_key():
    return KeyDescriptor(field_name="pk", kind=KeyKind.STRING)


@pytest.fixture
def source_factory():
    return FakeSource


@pytest.fixture
def transport():
    return MemoryTransport()


@pytest.fixture
def transport_factory():
    return MemoryTransport


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def sqlite_engine(tmp_path):
    """File backed SQLite database with a few collections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'collections.db'}",
        connect_args={"check_same_thread": False},
    )
    metadata = MetaData()
    products = Table(
        "products",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("name", String(50)),
        Column("price", Integer),
        Column("tags", JSON),
    )
    labels = Table(
        "labels",
        metadata,
        Column("pk", String(20), primary_key=True),
        Column("tag", JSON),
    )
    tags = Table(
        "tags",
        metadata,
        Column("pk", String(20, collation="NOCASE"), primary_key=True),
    )
    orders = Table(
        "orders",
        metadata,
        Column("order", Integer, primary_key=True),
        Column("name", String(50)),
    )
    Table(
        "pairs",
        metadata,
        Column("a", Integer, primary_key=True),
        Column("b", Integer, primary_key=True),
    )
    metadata.create_all(engine)

    with engine.begin() as conn:
        conn.execute(products.insert(), [
            {"id": 1, "name": "a", "price": 5, "tags": ["x", "y"]},
            {"id": 2, "name": "b", "price": 15, "tags": []},
            {"id": 3, "name": "c", "price": 25, "tags": ["z"]},
            {"id": 7, "name": "d", "price": 35, "tags": None},
            {"id": 9, "name": "e, f", "price": 45, "tags": [1, 2]},
        ])
        conn.execute(labels.insert(), [
            {"pk": "a", "tag": [1, 2]},
            {"pk": "b", "tag": [3]},
            {"pk": "o'neil", "tag": []},
        ])
        conn.execute(tags.insert(), [{"pk": "a"}, {"pk": "B"}, {"pk": "c"}])
        conn.execute(orders.insert(), [{"order": i, "name": f"o{i}"} for i in (1, 2, 3)])

    yield engine
    engine.dispose()
