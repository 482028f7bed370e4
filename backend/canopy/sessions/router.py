"""FastAPI routes for chat sessions: send, stop, edit, regenerate, branch."""

import asyncio
import json as json_module
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from canopy.generation.service import ChunkCallback
from canopy.models import Conversation, PendingMessage
from canopy.providers.base import ProviderError
from canopy.providers.registry import ProviderNotFoundError
from canopy.sessions.controller import SessionController
from canopy.sessions.schemas import (
    RegenerateRequest,
    ReplaceMessageRequest,
    ReplaceResponse,
    SendMessageRequest,
    SendResponse,
    StopResponse,
)
from canopy.trees.router import get_tree_service
from canopy.trees.service import NotFoundError, TreeService

router = APIRouter(prefix="/api/conversations", tags=["sessions"])

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def get_session_controller() -> SessionController:
    """Dependency placeholder, replaced at app startup."""
    raise RuntimeError("SessionController not initialized")


def pending_to_json(pending: PendingMessage) -> dict[str, Any]:
    data = pending.model_dump(by_alias=True, mode="json", exclude={"body"})
    data["content"] = pending.content
    return data


@router.post("/{conv_id}/send", response_model=None)
async def send_message(
    conv_id: str,
    request: SendMessageRequest,
    controller: SessionController = Depends(get_session_controller),
    trees: TreeService = Depends(get_tree_service),
) -> SendResponse | StreamingResponse:
    conv = await trees.get_conversation(conv_id)
    if conv is None:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conv_id}")
    leaf_id = conv.curr_node if request.leaf_id is None else request.leaf_id

    def run(on_chunk: ChunkCallback | None) -> Awaitable[bool]:
        return controller.send_message(
            conv_id, leaf_id, request.content, request.extra, on_chunk=on_chunk
        )

    if request.stream:
        return StreamingResponse(
            _stream_sse(run, trees, conv_id),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )
    return await _run_to_completion(run, trees, conv_id)


@router.post("/{conv_id}/stop")
async def stop_generating(
    conv_id: str,
    controller: SessionController = Depends(get_session_controller),
) -> StopResponse:
    return StopResponse(stopped=controller.stop_generating(conv_id))


@router.get("/{conv_id}/pending")
async def get_pending(
    conv_id: str,
    controller: SessionController = Depends(get_session_controller),
) -> dict[str, Any] | None:
    pending = controller.pending_message(conv_id)
    return pending_to_json(pending) if pending is not None else None


@router.post("/{conv_id}/messages/{msg_id}/replace")
async def replace_message(
    conv_id: str,
    msg_id: int,
    request: ReplaceMessageRequest,
    controller: SessionController = Depends(get_session_controller),
    trees: TreeService = Depends(get_tree_service),
) -> ReplaceResponse:
    try:
        msg = await trees.get_message(conv_id, msg_id)
        new_id = await controller.replace_message(conv_id, msg, request.content)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return ReplaceResponse(replaced=new_id is not None, curr_node=new_id)


@router.post("/{conv_id}/messages/{msg_id}/regenerate", response_model=None)
async def regenerate(
    conv_id: str,
    msg_id: int,
    request: RegenerateRequest,
    controller: SessionController = Depends(get_session_controller),
    trees: TreeService = Depends(get_tree_service),
) -> SendResponse | StreamingResponse:
    try:
        msg = await trees.get_message(conv_id, msg_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    extra = request.extra if request.content is not None else msg.extra

    def run(on_chunk: ChunkCallback | None) -> Awaitable[bool]:
        return controller.replace_message_and_generate(
            conv_id, msg, request.content, extra, on_chunk=on_chunk
        )

    if request.stream:
        return StreamingResponse(
            _stream_sse(run, trees, conv_id),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )
    return await _run_to_completion(run, trees, conv_id)


@router.post("/{conv_id}/messages/{msg_id}/branch", status_code=status.HTTP_201_CREATED)
async def branch_message(
    conv_id: str,
    msg_id: int,
    controller: SessionController = Depends(get_session_controller),
    trees: TreeService = Depends(get_tree_service),
) -> Conversation:
    try:
        msg = await trees.get_message(conv_id, msg_id)
        conv = await controller.branch_message(msg)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    if conv is None:
        raise HTTPException(
            status_code=409, detail=f"A generation is in progress for {conv_id}"
        )
    return conv


async def _run_to_completion(
    run: Callable[[ChunkCallback | None], Awaitable[bool]],
    trees: TreeService,
    conv_id: str,
) -> SendResponse:
    try:
        sent = await run(None)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ProviderNotFoundError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))
    conv = await trees.get_conversation(conv_id)
    return SendResponse(sent=sent, curr_node=conv.curr_node if conv else None)


async def _stream_sse(
    run: Callable[[ChunkCallback | None], Awaitable[bool]],
    trees: TreeService,
    conv_id: str,
) -> AsyncIterator[str]:
    """Async generator that yields SSE-formatted pending-message updates."""
    queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

    def on_chunk(pending: PendingMessage) -> None:
        queue.put_nowait(pending_to_json(pending))

    task = asyncio.ensure_future(run(on_chunk))
    task.add_done_callback(lambda _: queue.put_nowait(None))

    while (item := await queue.get()) is not None:
        yield f"event: pending\ndata: {json_module.dumps(item)}\n\n"

    try:
        sent = task.result()
    except Exception as e:
        error = {"error": str(e)}
        yield f"event: error\ndata: {json_module.dumps(error)}\n\n"
        return

    conv = await trees.get_conversation(conv_id)
    done = SendResponse(sent=sent, curr_node=conv.curr_node if conv else None)
    yield f"event: done\ndata: {done.model_dump_json()}\n\n"
