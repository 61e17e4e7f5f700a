"""
Serialization sinks - incremental CSV / JSON writers bound to a transport.

A sink turns records into bytes and hands them to a transport one record at a
time. Nothing is accumulated: every ``write`` awaits the transport, so a slow
consumer slows the export down instead of growing a buffer.
"""

import csv
import json
from io import StringIO
from typing import AsyncIterator, List, Optional, Protocol

import anyio

from bulk_export.exports.exceptions import SinkWriteError
from bulk_export.exports.models import ALL_FIELDS, ExportFormat, Record
from bulk_export.utils.logger import get_logger

logger = get_logger(__name__)


class Transport(Protocol):
    """Outbound byte destination a sink writes to."""

    async def send(self, data: bytes) -> None:
        ...

    async def aclose(self) -> None:
        ...


class ChannelTransport:
    """
    Bounded in-memory channel between an export task and an HTTP response.

    ``send`` blocks once ``max_buffer_size`` chunks are waiting, which is where
    the export feels backpressure from a slow client. When the response side
    goes away (client disconnect), the receive end is closed and every pending
    or later ``send`` fails with SinkWriteError.
    """

    def __init__(self, max_buffer_size: int = 16):
        self._send_stream, self._receive_stream = anyio.create_memory_object_stream(
            max_buffer_size=max_buffer_size
        )

    async def send(self, data: bytes) -> None:
        try:
            await self._send_stream.send(data)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError) as e:
            raise SinkWriteError("Client disconnected before the export finished") from e

    async def aclose(self) -> None:
        await self._send_stream.aclose()

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        """Response body iterator; closing it breaks the channel for the writer."""
        async with self._receive_stream:
            async for chunk in self._receive_stream:
                yield chunk


class BaseSink:
    """
    Format-polymorphic write-only destination.

    Subclasses render records; the base class owns the transport lifecycle.
    """

    def __init__(self, transport: Transport, output_fields: List[str], encoding: str = "utf-8"):
        self.transport = transport
        self.output_fields = list(output_fields)
        self.encoding = encoding
        self.records_written = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def write(self, record: Record) -> None:
        """Append one record, waiting for the transport to accept it."""
        if self._closed:
            raise SinkWriteError("Cannot write to a closed sink")
        try:
            text = self._render(record)
        except (TypeError, ValueError) as e:
            raise SinkWriteError(f"Could not encode record: {e}") from e
        await self._send(text)
        self.records_written += 1

    async def close(self) -> None:
        """Write the closing framing and release the transport. Safe to repeat."""
        if self._closed:
            return
        self._closed = True
        try:
            trailer = self._trailer()
            if trailer:
                await self._send(trailer)
        finally:
            await self.transport.aclose()

    async def abort(self) -> None:
        """Release the transport without framing, leaving the output truncated."""
        if self._closed:
            return
        self._closed = True
        logger.warning("Sink aborted after %s records, output left truncated", self.records_written)
        await self.transport.aclose()

    async def _send(self, text: str) -> None:
        try:
            data = text.encode(self.encoding)
        except UnicodeEncodeError as e:
            raise SinkWriteError(f"Could not encode output as {self.encoding}: {e}") from e
        await self.transport.send(data)

    def _render(self, record: Record) -> str:
        raise NotImplementedError

    def _trailer(self) -> Optional[str]:
        return None


class CSVSink(BaseSink):
    """
    CSV with a header row.

    Column order comes from ``output_fields`` so every row lines up with the
    header. With ``"*"`` the header is taken from the first record.
    """

    def __init__(self, transport: Transport, output_fields: List[str], encoding: str = "utf-8"):
        super().__init__(transport, output_fields, encoding)
        self._headers: Optional[List[str]] = None
        if ALL_FIELDS not in self.output_fields:
            self._headers = self.output_fields

    def _render(self, record: Record) -> str:
        buffer = StringIO()
        if self.records_written == 0:
            if self._headers is None:
                self._headers = list(record.keys())
            header_writer = csv.writer(buffer, lineterminator="\n")
            header_writer.writerow(self._headers)

        writer = csv.DictWriter(
            buffer,
            fieldnames=self._headers,
            restval="",
            extrasaction="ignore",
            lineterminator="\n",
        )
        writer.writerow(record)
        return buffer.getvalue()

    def _trailer(self) -> Optional[str]:
        # Header still goes out for an empty export with known columns
        if self.records_written == 0 and self._headers:
            buffer = StringIO()
            csv.writer(buffer, lineterminator="\n").writerow(self._headers)
            return buffer.getvalue()
        return None


class JSONSink(BaseSink):
    """
    A single JSON array written element by element: ``[``, records, ``]``.
    """

    def _render(self, record: Record) -> str:
        element = json.dumps(record, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
        if self.records_written == 0:
            return "[" + element
        return "," + element

    def _trailer(self) -> Optional[str]:
        if self.records_written == 0:
            return "[]"
        return "]"


def create_sink(export_format: ExportFormat, transport: Transport, output_fields: List[str]) -> BaseSink:
    """Pick the sink implementation for an export format."""
    if export_format is ExportFormat.CSV:
        return CSVSink(transport, output_fields)
    elif export_format is ExportFormat.JSON:
        return JSONSink(transport, output_fields)
    else:
        raise ValueError(f"Unsupported export format: {export_format}")
