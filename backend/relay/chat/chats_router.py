"""Chat roster REST API router.

Endpoints:
    GET   /chats                - Chats of the caller, most recent first
    POST  /chats/group          - Create a group (caller becomes admin)
    PATCH /chats/{chat_id}      - Update a group (admins only)
    GET   /chats/dm/{user_id}   - Get or create the dm with another user
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from relay.auth.service import current_user_id
from relay.errors import RelayError
from relay.store.schemas import GroupCreate, GroupUpdate

from .service import get_chat_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chats", tags=["chats"])


def _roster():
    return get_chat_service().roster


@router.get("")
async def list_chats(user_id: str = Depends(current_user_id)) -> JSONResponse:
    chats = _roster().list_chats(user_id)
    return JSONResponse([c.model_dump(mode="json") for c in chats])


@router.post("/group", status_code=201)
async def create_group(body: GroupCreate, user_id: str = Depends(current_user_id)) -> JSONResponse:
    """Create a group chat.

    Args:
        body: Name, member ids and optional picture URL.

    Returns:
        The created chat (201 Created).
    """
    try:
        chat = _roster().create_group(user_id, body.name, body.participantIds, body.groupPicture)
    except RelayError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    logger.info("[chats] Group %s created by %s", chat.id, user_id)
    return JSONResponse(chat.model_dump(mode="json"), status_code=201)


@router.patch("/{chat_id}")
async def update_group(
    chat_id: str,
    body: GroupUpdate,
    user_id: str = Depends(current_user_id),
) -> JSONResponse:
    try:
        chat = _roster().update_group(chat_id, user_id, body)
    except RelayError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return JSONResponse(chat.model_dump(mode="json"))


@router.get("/dm/{other_user_id}")
async def get_or_create_dm(other_user_id: str, user_id: str = Depends(current_user_id)) -> JSONResponse:
    """Return the dm with ``other_user_id``; the same chat on every call."""
    try:
        chat = _roster().get_or_create_dm(user_id, other_user_id)
    except RelayError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return JSONResponse(chat.model_dump(mode="json"))
