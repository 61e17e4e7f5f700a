"""
Streaming Export Service - Memory-Efficient Export Generation

Orchestrates one export end to end: counts the source, discovers its key
field, pages through it with keyset bounds, projects every row and writes it
to a streaming sink while publishing progress.

CRITICAL: rows are written one at a time through the sink and the next page
is only requested once the current one is fully written. Nothing is
accumulated in memory beyond a single page.
"""

import asyncio
import time
from typing import Optional, Set

from bulk_export.exports.models import (
    ExportRequest,
    ExportState,
    ExportStatus,
    ProgressEvent,
    ProgressPhase,
)
from bulk_export.exports.pager import KeysetPager
from bulk_export.exports.progress import NullPublisher, ProgressPublisher
from bulk_export.exports.projector import project
from bulk_export.exports.sinks import BaseSink, Transport, create_sink
from bulk_export.exports.sources import SourceQueryService
from bulk_export.utils.logger import get_logger

logger = get_logger(__name__)


class StreamingExportService:
    """
    Service for streaming a whole source out through a sink.

    Uses memory-efficient patterns:
    - Keyset pagination instead of offsets
    - One record at a time into the sink, awaiting transport backpressure
    - No accumulation of data in memory

    State machine per export:
    INIT -> COUNTING -> DISCOVERING_KEY -> PAGING -> CLOSING -> COMPLETED,
    with FAILED reachable from every non-terminal state.
    """

    def __init__(self, source: SourceQueryService, publisher: Optional[ProgressPublisher] = None):
        """
        Initialize streaming export service.

        Args:
            source: Source query service exports read from
            publisher: Receives progress events, discarded when omitted
        """
        self.source = source
        self.publisher = publisher or NullPublisher()

    async def export(self, request: ExportRequest, transport: Transport) -> ExportState:
        """
        Stream the records selected by an export request to a transport.

        Args:
            request: What to export and how
            transport: Destination for the serialized bytes

        Returns:
            Final export state (rows emitted, pages fetched, status)

        Raises:
            SourceQueryError: count, schema or page query failed
            SchemaMismatchError: the source key cannot drive pagination
            SinkWriteError: the transport refused a write (client gone)
        """
        state = ExportState(format=request.format)
        sink = create_sink(state.format, transport, request.output_fields)
        started = time.perf_counter()

        try:
            self._transition(state, ExportStatus.COUNTING, request)
            state.total_target = await self.source.count(
                request.source_name, request.filter_expression
            )

            self._transition(state, ExportStatus.DISCOVERING_KEY, request)
            key = await self.source.describe_key_field(request.source_name)
            pager = KeysetPager(self.source, request, key)

            logger.info(
                f"exporting {request.source_name}, output_fields: {request.output_fields}, "
                f"data count: {state.total_target}, batch size: {request.page_size}"
            )

            self._transition(state, ExportStatus.PAGING, request)
            state.last_key_value = key.initial_value
            self._notify(ProgressEvent(
                phase=ProgressPhase.STARTED,
                filename=request.filename,
                rows_emitted=0,
                total_target=state.total_target,
            ))

            await self._page_through(request, state, pager, sink)

            self._transition(state, ExportStatus.CLOSING, request)
            await sink.close()

            self._transition(state, ExportStatus.COMPLETED, request)
            self._notify(ProgressEvent(
                phase=ProgressPhase.COMPLETED,
                filename=request.filename,
                rows_emitted=state.rows_emitted,
                total_target=state.total_target,
            ))

            logger.info(
                f"Export {request.filename} completed: {state.rows_emitted} records "
                f"in {state.pages_fetched} pages, {time.perf_counter() - started:.3f}s"
            )
            return state

        except Exception as e:
            state.status = ExportStatus.FAILED
            logger.error(
                f"Error during export {request.filename} after {state.rows_emitted} records: {e}",
                exc_info=True,
            )
            raise

        finally:
            if not state.status.is_terminal:
                # Cancelled from outside, e.g. the serving task was torn down
                state.status = ExportStatus.FAILED
                logger.warning(f"Export {request.filename} cancelled after {state.rows_emitted} records")
            if not sink.closed:
                await self._abort_sink(sink, request)

    def start(
        self,
        request: ExportRequest,
        transport: Transport,
        running: Optional[Set["asyncio.Task[ExportState]"]] = None,
    ) -> "asyncio.Task[ExportState]":
        """
        Run an export as a background task on the current event loop.

        The task's outcome is logged by a done callback, so callers that only
        stream the transport do not need to await it. The event loop holds
        tasks weakly; pass ``running`` to keep the task referenced until it
        finishes.
        """
        task = asyncio.create_task(
            self.export(request, transport), name=f"export:{request.filename}"
        )
        task.add_done_callback(_log_task_outcome)
        if running is not None:
            running.add(task)
            task.add_done_callback(running.discard)
        return task

    async def _page_through(
        self,
        request: ExportRequest,
        state: ExportState,
        pager: KeysetPager,
        sink: BaseSink,
    ) -> None:
        """
        Paging loop: fetch, project, write, advance the bound, report.

        Stops when the target is reached, on an empty page (rows vanished
        since counting) or on a short page (source exhausted).
        """
        while not state.is_satisfied:
            limit = pager.page_limit(state)
            page_started = time.perf_counter()

            page = await pager.next_page(state)
            state.pages_fetched += 1

            if not page:
                logger.info(
                    f"Source {request.source_name} ran out after {state.rows_emitted} "
                    f"of {state.total_target} records, finishing early"
                )
                break

            for record in page:
                await sink.write(project(record, request.output_fields, state.format))

            state.last_key_value = pager.last_key(page)
            state.rows_emitted += len(page)

            logger.debug(
                f"exported {state.rows_emitted}/{state.total_target} of {request.filename} "
                f"in {(time.perf_counter() - page_started) * 1000:.1f}ms"
            )
            self._notify(ProgressEvent(
                phase=ProgressPhase.PROGRESS,
                filename=request.filename,
                rows_emitted=state.rows_emitted,
                total_target=state.total_target,
            ))

            if len(page) < limit:
                break

    def _notify(self, event: ProgressEvent) -> None:
        try:
            self.publisher.publish(event)
        except Exception as e:
            logger.warning(f"Progress publisher rejected {event.phase.value} event: {e}")

    async def _abort_sink(self, sink: BaseSink, request: ExportRequest) -> None:
        try:
            await sink.abort()
        except Exception as e:
            logger.error(f"Failed to release sink for {request.filename}: {e}")

    @staticmethod
    def _transition(state: ExportState, status: ExportStatus, request: ExportRequest) -> None:
        logger.debug(f"Export {request.filename}: {state.status.value} -> {status.value}")
        state.status = status


def _log_task_outcome(task: "asyncio.Task[ExportState]") -> None:
    if task.cancelled():
        logger.warning(f"Export task {task.get_name()} was cancelled")
        return
    error = task.exception()
    if error is not None:
        logger.debug(f"Export task {task.get_name()} ended with {type(error).__name__}")
