"""Chat router providing the WebSocket transport and message endpoints.

This module provides:
    - WebSocket /ws?accessToken=<jwt>: real-time event channel
    - GET    /messages/{chat_id}: message history (ascending)
    - POST   /messages/{chat_id}: send a message
    - PATCH  /messages/{message_id}: edit own message
    - DELETE /messages/{message_id}: delete own message
    - POST   /messages/{message_id}/reactions: toggle a reaction

Protocol Message Types (client -> server):
    - joinChat: {chatId} join a chat room (e.g. a chat created after connect)
    - leaveChat: {chatId}
    - messageSeen: {messageId, chatId}

Events (server -> client), as {type, data}:
    - connected, missedMessages, newMessage, messageStatusUpdate,
      messageReaction, messageUpdated, messageDeleted, getOnlineUsers, error
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from relay.auth.service import current_user_id, get_verifier
from relay.errors import RelayError
from relay.store.schemas import MessageContent, MessageEdit, ReactionToggle

from .service import get_chat_service
from .session import ConnectionSession

logger = logging.getLogger(__name__)

router = APIRouter()


def _http_error(e: RelayError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    accessToken: Optional[str] = Query(None, description="Access token (JWT)"),
) -> None:
    """WebSocket endpoint carrying all real-time events for one user.

    Protocol Flow:
        1. Client connects with ?accessToken=...; an invalid token is
           rejected before the socket is accepted.
        2. Server sends {type: "connected", data: {userId, handle}}
        3. Server sends {type: "missedMessages", data: [...]} if anything
           was pending, then promotes those messages to delivered.
        4. Every client receives {type: "getOnlineUsers", data: [...]}
        5. Client frames are handled until disconnect, which clears
           presence and re-broadcasts the online users.
    """
    session = ConnectionSession(websocket, get_chat_service(), get_verifier())
    logger.info("[WS] New connection %s", session.handle)

    try:
        await session.authenticate(accessToken)
    except RelayError:
        return

    try:
        await session.activate()
    except Exception:
        return

    try:
        while True:
            data = await websocket.receive_json()
            if not isinstance(data, dict):
                await session.send_error("Frames must be JSON objects")
                continue
            await session.handle_event(data)
    except WebSocketDisconnect:
        logger.info("[WS] %s disconnected (%s)", session.user_id, session.handle)
        await session.close(transport_closed=True)
    except Exception as e:
        logger.error("[WS] Connection %s failed: %s", session.handle, e)
        await session.close()


@router.get("/messages/{chat_id}")
async def get_messages(chat_id: str, user_id: str = Depends(current_user_id)) -> JSONResponse:
    """Messages of a chat, oldest first. Participants only."""
    try:
        messages = get_chat_service().get_messages(chat_id, user_id)
    except RelayError as e:
        raise _http_error(e)
    return JSONResponse([m.model_dump(mode="json") for m in messages])


@router.post("/messages/{chat_id}", status_code=201)
async def send_message(
    chat_id: str,
    body: MessageContent,
    user_id: str = Depends(current_user_id),
) -> JSONResponse:
    """Send a message to a chat.

    The message is persisted first; it is returned (201) even if no
    recipient is online, with whatever status the dispatch produced.
    """
    try:
        message = await get_chat_service().send_message(chat_id, user_id, body)
    except RelayError as e:
        raise _http_error(e)
    return JSONResponse(message.model_dump(mode="json"), status_code=201)


@router.patch("/messages/{message_id}")
async def edit_message(
    message_id: str,
    body: MessageEdit,
    user_id: str = Depends(current_user_id),
) -> JSONResponse:
    try:
        message = await get_chat_service().edit_message(message_id, user_id, body.text)
    except RelayError as e:
        raise _http_error(e)
    return JSONResponse(message.model_dump(mode="json"))


@router.delete("/messages/{message_id}")
async def delete_message(message_id: str, user_id: str = Depends(current_user_id)) -> JSONResponse:
    try:
        deleted_id = await get_chat_service().delete_message(message_id, user_id)
    except RelayError as e:
        raise _http_error(e)
    return JSONResponse({"messageId": deleted_id})


@router.post("/messages/{message_id}/reactions")
async def toggle_reaction(
    message_id: str,
    body: ReactionToggle,
    user_id: str = Depends(current_user_id),
) -> JSONResponse:
    """Toggle the caller's reaction with ``emoji`` on a message."""
    try:
        message = await get_chat_service().toggle_reaction(message_id, user_id, body.emoji)
    except RelayError as e:
        raise _http_error(e)
    return JSONResponse(message.model_dump(mode="json"))
