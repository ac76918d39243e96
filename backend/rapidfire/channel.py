"""Real-time channel for the rapid fire round.

Every frame in either direction is a JSON envelope ``{"event": ..., "data": ...}``.
Clients send ``joinRapidFire`` and ``submitAnswer``; everything the server
pushes comes from :class:`~backend.rapidfire.game.RapidFireController`.
"""

from __future__ import annotations

import logging

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from .game import RapidFireController
from .schemas import ClientMessage, JoinRapidFireIn, SubmitAnswerIn

logger = logging.getLogger(__name__)


async def handle_message(controller: RapidFireController, connection_id: str, raw: str) -> None:
    try:
        message = ClientMessage.model_validate_json(raw)
        if message.event == "joinRapidFire":
            join = JoinRapidFireIn.model_validate(message.data)
        elif message.event == "submitAnswer":
            submission = SubmitAnswerIn.model_validate(message.data)
        else:
            logger.debug("Ignoring unknown event %r from %s", message.event, connection_id)
            return
    except ValidationError as exc:
        controller.registry.send(
            connection_id, "error", {"message": f"Malformed message: {exc.error_count()} invalid field(s)"}
        )
        return

    if message.event == "joinRapidFire":
        await controller.join(connection_id, join.user_id, join.first_name, join.last_name)
        return

    participant_id = controller.registry.participant_for(connection_id)
    if participant_id is None:
        logger.debug("Ignoring submission from unjoined connection %s", connection_id)
        return
    await controller.submit_answer(participant_id, submission.question_id, submission.answer, submission.timestamp)


async def rapid_fire_channel(websocket: WebSocket, controller: RapidFireController) -> None:
    await websocket.accept()
    connection_id = controller.registry.add(websocket)
    try:
        while True:
            try:
                raw = await websocket.receive_text()
            except WebSocketDisconnect:
                break
            try:
                await handle_message(controller, connection_id, raw)
            except Exception:
                logger.exception("Error handling rapid fire message from %s", connection_id)
    finally:
        await controller.disconnect(connection_id)
