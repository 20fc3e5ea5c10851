"""HTTP routes: health check and the Twilio incoming-call webhook."""

from __future__ import annotations

from xml.sax.saxutils import escape, quoteattr

from fastapi import APIRouter, Depends, Request, Response

from api.dependencies import get_gateway
from config.settings import get_settings

router = APIRouter()


def _to_ws_url(http_url: str) -> str:
    if http_url.startswith("https://"):
        return "wss://" + http_url.removeprefix("https://")
    if http_url.startswith("http://"):
        return "ws://" + http_url.removeprefix("http://")
    return http_url


def _stream_url(request: Request) -> str:
    settings = get_settings()
    if settings.public_base_url:
        return _to_ws_url(f"{settings.public_base_url.rstrip('/')}/media-stream")
    # Twilio only connects to secure sockets.
    host = request.headers.get("host") or request.url.netloc
    return f"wss://{host}/media-stream"


def _twiml_say_and_stream(*, say_text: str, voice: str, stream_url: str) -> str:
    return (
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
        "<Response>"
        f"<Say voice={quoteattr(voice)}>{escape(say_text)}</Say>"
        "<Connect>"
        f"<Stream url={quoteattr(stream_url)} />"
        "</Connect>"
        "</Response>"
    )


@router.get("/")
async def root(gateway=Depends(get_gateway)) -> dict:
    return {
        "message": "Twilio Media Stream Server is running!",
        "active_sessions": len(gateway.active_sessions),
    }


@router.api_route("/incoming-call", methods=["GET", "POST"])
async def incoming_call(request: Request) -> Response:
    settings = get_settings()
    xml = _twiml_say_and_stream(
        say_text=settings.greeting_text,
        voice=settings.twilio_say_voice,
        stream_url=_stream_url(request),
    )
    # Twilio expects application/xml
    return Response(content=xml, media_type="application/xml")
