"""FastAPI routes for conversation, message and preset CRUD."""

from fastapi import APIRouter, Depends, HTTPException, Response, status

from canopy.models import ConfigurationPreset, Conversation, Message, MessageDisplay
from canopy.trees.schemas import (
    AppendMessageRequest,
    ConversationDetailResponse,
    CreateConversationRequest,
    PatchConversationRequest,
    SavePresetRequest,
    SetCurrentNodeRequest,
)
from canopy.trees.service import NotFoundError, StoreError, TreeService

router = APIRouter(prefix="/api/conversations", tags=["conversations"])
presets_router = APIRouter(prefix="/api/presets", tags=["presets"])


def get_tree_service() -> TreeService:
    """Dependency placeholder, replaced at app startup."""
    raise RuntimeError("TreeService not initialized")


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_conversation(
    request: CreateConversationRequest,
    service: TreeService = Depends(get_tree_service),
) -> Conversation:
    return await service.create_conversation(request.name)


@router.get("")
async def list_conversations(
    service: TreeService = Depends(get_tree_service),
) -> list[Conversation]:
    return await service.get_all_conversations()


@router.get("/{conv_id}")
async def get_conversation(
    conv_id: str,
    service: TreeService = Depends(get_tree_service),
) -> ConversationDetailResponse:
    conv = await service.get_conversation(conv_id)
    if conv is None:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conv_id}")
    return ConversationDetailResponse(
        conversation=conv, messages=await service.get_messages(conv_id)
    )


@router.patch("/{conv_id}")
async def rename_conversation(
    conv_id: str,
    request: PatchConversationRequest,
    service: TreeService = Depends(get_tree_service),
) -> Conversation:
    try:
        return await service.update_conversation_name(conv_id, request.name)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.delete("/{conv_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation(
    conv_id: str,
    service: TreeService = Depends(get_tree_service),
) -> Response:
    try:
        await service.delete_conversation(conv_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{conv_id}/messages")
async def get_message_displays(
    conv_id: str,
    leaf: int | None = None,
    service: TreeService = Depends(get_tree_service),
) -> list[MessageDisplay]:
    """The branch ending at `leaf` (default: the tip), with sibling leaf ids."""
    try:
        return await service.get_message_displays(conv_id, leaf)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{conv_id}/path")
async def get_leaf_path(
    conv_id: str,
    leaf: int | None = None,
    include_root: bool = False,
    service: TreeService = Depends(get_tree_service),
) -> list[Message]:
    conv = await service.get_conversation(conv_id)
    if conv is None:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conv_id}")
    messages = await service.get_messages(conv_id)
    return service.filter_to_leaf_path(
        messages, conv.curr_node if leaf is None else leaf, include_root
    )


@router.post("/{conv_id}/messages", status_code=status.HTTP_201_CREATED)
async def append_message(
    conv_id: str,
    request: AppendMessageRequest,
    service: TreeService = Depends(get_tree_service),
) -> Message:
    conv = await service.get_conversation(conv_id)
    if conv is None:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conv_id}")
    parent_id = conv.curr_node if request.parent_id is None else request.parent_id
    msg_id = service.ids.next_id()
    msg = Message(
        id=msg_id,
        conv_id=conv_id,
        timestamp=msg_id,
        role=request.role,
        content=request.content,
        model=request.model,
        extra=request.extra,
        parent=parent_id,
    )
    try:
        await service.append_message(msg, parent_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return await service.get_message(conv_id, msg_id)


@router.delete("/{conv_id}/messages/{msg_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_message(
    conv_id: str,
    msg_id: int,
    service: TreeService = Depends(get_tree_service),
) -> Response:
    try:
        msg = await service.get_message(conv_id, msg_id)
        await service.delete_message(msg)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/{conv_id}/current-node")
async def set_current_node(
    conv_id: str,
    request: SetCurrentNodeRequest,
    service: TreeService = Depends(get_tree_service),
) -> Conversation:
    try:
        return await service.set_current_node(conv_id, request.msg_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


# -- Configuration presets --


@presets_router.get("")
async def list_presets(
    service: TreeService = Depends(get_tree_service),
) -> list[ConfigurationPreset]:
    return await service.get_presets()


@presets_router.put("/{name}")
async def save_preset(
    name: str,
    request: SavePresetRequest,
    service: TreeService = Depends(get_tree_service),
) -> ConfigurationPreset:
    return await service.save_preset(name, request.config)


@presets_router.delete("/{name}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_preset(
    name: str,
    service: TreeService = Depends(get_tree_service),
) -> Response:
    if await service.remove_preset(name) == 0:
        raise HTTPException(status_code=404, detail=f"Preset not found: {name}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
