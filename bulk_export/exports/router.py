"""
Export API Endpoints

Provides REST endpoints for counting and exporting collections, and a
websocket for following export progress.
"""

import asyncio
from typing import List, Optional, Set

import anyio
from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from bulk_export.core.config import Settings
from bulk_export.exports.exceptions import SourceNotFoundError, SourceQueryError, SourceUnavailableError
from bulk_export.exports.progress import ProgressBroadcaster, Subscription
from bulk_export.exports.schemas import CountResponse, ExportParams, ProgressMessage
from bulk_export.exports.sinks import ChannelTransport
from bulk_export.exports.sources import SqlAlchemySource
from bulk_export.exports.streaming_service import StreamingExportService
from bulk_export.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/collections", tags=["Exports"])


def get_source(request: Request) -> SqlAlchemySource:
    return request.app.state.source


def get_progress(request: Request) -> ProgressBroadcaster:
    return request.app.state.progress


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_export_tasks(request: Request) -> Set[asyncio.Task]:
    return request.app.state.export_tasks


def _raise_for_source_error(error: SourceQueryError) -> None:
    if isinstance(error, SourceNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error)) from error
    if isinstance(error, SourceUnavailableError):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(error)) from error
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error)) from error


@router.get("/{name}/count", response_model=CountResponse)
async def count_collection(
    name: str,
    source: SqlAlchemySource = Depends(get_source),
):
    """
    Count the rows of a collection.

    Returns 404 when the collection does not exist.
    """
    try:
        if not await source.exists(name):
            raise SourceNotFoundError(name)
        row_count = await source.count(name)
    except SourceQueryError as e:
        logger.warning("Count failed for %s: %s", name, e)
        _raise_for_source_error(e)

    return CountResponse(collection_name=name, row_count=row_count)


@router.get("/{name}/export")
async def export_collection(
    name: str,
    output_fields: List[str] = Query(..., alias="outputFields", description="Fields to export, repeatable"),
    filename: str = Query(..., description="Download filename, .csv selects CSV"),
    expr: Optional[str] = Query(None, description="Optional filter expression"),
    source: SqlAlchemySource = Depends(get_source),
    progress: ProgressBroadcaster = Depends(get_progress),
    settings: Settings = Depends(get_app_settings),
    export_tasks: Set[asyncio.Task] = Depends(get_export_tasks),
):
    """
    Stream a whole collection as a CSV or JSON download.

    The export runs in the background and feeds a bounded channel that this
    response drains, so memory use does not grow with the collection size.
    Progress is published to subscribers of ``/collections/export/progress``.

    A failure once streaming has begun cannot change the status code; the
    download is left truncated (no closing ``]`` for JSON, missing rows for
    CSV).
    """
    try:
        params = ExportParams(
            output_fields=output_fields,
            filename=filename,
            filter_expression=expr,
            page_size=settings.export_page_size,
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=e.errors(include_url=False, include_context=False),
        ) from e

    try:
        if not await source.exists(name):
            raise SourceNotFoundError(name)
    except SourceQueryError as e:
        _raise_for_source_error(e)

    export_request = params.to_request(name)
    transport = ChannelTransport(max_buffer_size=settings.export_channel_buffer)
    StreamingExportService(source, progress).start(
        export_request, transport, running=export_tasks
    )

    headers = {"Content-Disposition": f"attachment; filename={export_request.filename}"}
    return StreamingResponse(
        transport.iter_chunks(),
        media_type=export_request.format.media_type,
        headers=headers,
    )


@router.websocket("/export/progress")
async def export_progress(websocket: WebSocket, filename: Optional[str] = None):
    """
    Push progress events of running exports, optionally for one filename.

    No replay: only events published after the connection is open arrive.
    The subscription ends as soon as the client disconnects, whether or not
    any event was due.
    """
    progress: ProgressBroadcaster = websocket.app.state.progress
    async with progress.subscribe(filename) as subscription:
        await websocket.accept()
        async with anyio.create_task_group() as task_group:
            task_group.start_soon(_forward_progress, websocket, subscription)
            await _wait_for_disconnect(websocket)
            task_group.cancel_scope.cancel()
    logger.debug("Progress subscriber disconnected", filename=filename)


async def _forward_progress(websocket: WebSocket, subscription: Subscription) -> None:
    try:
        async for event in subscription:
            message = ProgressMessage(**event.to_dict())
            await websocket.send_json(message.model_dump(mode="json"))
    except WebSocketDisconnect:
        pass


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    # Clients have nothing to say; anything but a disconnect is ignored
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
