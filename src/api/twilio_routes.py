"""Twilio Media Streams WebSocket endpoint."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, WebSocket

from api.dependencies import get_gateway
from telephony.twilio_stream import TwilioMediaStream

LOGGER = logging.getLogger(__name__)

router = APIRouter(tags=["twilio"])


@router.websocket("/media-stream")
async def media_stream(websocket: WebSocket, gateway=Depends(get_gateway)) -> None:
    await websocket.accept()
    LOGGER.info("Twilio media stream connected from %s", websocket.client)
    await gateway.accept_connection(TwilioMediaStream(websocket))
