"""
Web server for the service request assistant

Endpoints:
  POST   /api/channels/{channel_id}/messages   {text}
  POST   /api/channels/{channel_id}/commit     {offeringId, values, commitId?}
  DELETE /api/channels/{channel_id}
  GET    /api/channels/{channel_id}/events     (WebSocket)
  POST   /api/identity/signal                  {kind: LOGIN|LOGOUT, hint?}
  POST   /api/identity/cookies                 {name, removed, domain?}
  GET    /api/session
  GET    /health
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from aiohttp import WSMsgType, web
from aiohttp.web import Request, Response
from dotenv import load_dotenv

from sr_assistant.agents.assistant import ServiceDeskAssistant, build_assistant
from sr_assistant.agents.config.agent_config import AgentConfig
from sr_assistant.core.logging import setup_logging
from sr_assistant.session.models import IdentitySignal, SignalKind

logger = logging.getLogger(__name__)

ASSISTANT_KEY = web.AppKey("assistant", ServiceDeskAssistant)

COMMIT_ERROR_STATUS = {
    "schema_incomplete": 422,
    "record_rejected": 422,
    "commit_in_progress": 409,
    "not_ready": 409,
    "offering_mismatch": 409,
    "tool_unavailable": 503,
    "no_channel": 404,
}


async def _read_json(req: Request) -> dict[str, Any]:
    try:
        body = await req.json()
    except ValueError:
        raise web.HTTPBadRequest(text="Body must be JSON")
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="Body must be a JSON object")
    return body


def _session_summary(session) -> dict[str, Any]:
    return {
        "sessionId": session.session_id,
        "establishedAt": session.established_at.isoformat(),
        "identity": session.identity.to_dict(),
    }


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------
async def post_message(req: Request) -> Response:
    assistant = req.app[ASSISTANT_KEY]
    channel_id = req.match_info["channel_id"]
    body = await _read_json(req)
    text = str(body.get("text") or "").strip()
    if not text:
        raise web.HTTPBadRequest(text="'text' is required")

    result = await assistant.handle_message(channel_id, text)
    status = 401 if result.error == "no_session" else 200
    return web.json_response(result.to_dict(), status=status)


async def post_commit(req: Request) -> Response:
    """COMMIT_REQUESTED: only ever sent on an explicit user submit."""
    assistant = req.app[ASSISTANT_KEY]
    channel_id = req.match_info["channel_id"]
    body = await _read_json(req)
    offering_id = body.get("offeringId")
    values = body.get("values") or {}
    if not offering_id or not isinstance(values, dict):
        raise web.HTTPBadRequest(text="'offeringId' and object 'values' are required")

    logger.info(f"Commit requested on channel {channel_id}")
    outcome = await assistant.handle_commit(channel_id, str(offering_id), values, body.get("commitId"))
    status = 200 if outcome.success else COMMIT_ERROR_STATUS.get(outcome.error or "", 400)
    return web.json_response(outcome.to_dict(), status=status)


async def delete_channel(req: Request) -> Response:
    await req.app[ASSISTANT_KEY].close_channel(req.match_info["channel_id"])
    return Response(status=204)


async def channel_events(req: Request) -> web.WebSocketResponse:
    assistant = req.app[ASSISTANT_KEY]
    channel_id = req.match_info["channel_id"]
    ws = web.WebSocketResponse(heartbeat=30)
    queue = assistant.broadcaster.subscribe(channel_id)

    async def forward() -> None:
        while True:
            event = await queue.get()
            await ws.send_json(event.to_dict())

    sender: asyncio.Task | None = None
    try:
        await ws.prepare(req)
        sender = asyncio.create_task(forward())
        async for msg in ws:
            if msg.type == WSMsgType.ERROR:
                logger.warning(f"Event socket for {channel_id} closed with {ws.exception()}")
                break
    finally:
        if sender is not None:
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sender
        assistant.broadcaster.unsubscribe(channel_id, queue)
    return ws


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------
async def post_identity_signal(req: Request) -> Response:
    body = await _read_json(req)
    try:
        kind = SignalKind(str(body.get("kind", "")).upper())
    except ValueError:
        raise web.HTTPBadRequest(text="'kind' must be LOGIN or LOGOUT")

    assistant = req.app[ASSISTANT_KEY]
    await assistant.on_identity_signal(IdentitySignal(kind=kind, hint=body.get("hint"), source="ui"))
    session = assistant.live_session()
    return web.json_response({"session": _session_summary(session) if session else None})


async def post_cookie_change(req: Request) -> Response:
    body = await _read_json(req)
    name = body.get("name")
    if not name:
        raise web.HTTPBadRequest(text="'name' is required")
    kind = await req.app[ASSISTANT_KEY].on_cookie_changed(
        str(name), bool(body.get("removed")), body.get("domain")
    )
    return web.json_response({"signal": kind.value if kind else None})


async def get_session(req: Request) -> Response:
    session = req.app[ASSISTANT_KEY].live_session()
    if session is None:
        return Response(status=204)
    return web.json_response(_session_summary(session))


async def health_check(req: Request) -> Response:
    """Health check endpoint"""
    return Response(text="Assistant is running", status=200)


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
def create_app(assistant: ServiceDeskAssistant) -> web.Application:
    app = web.Application()
    app[ASSISTANT_KEY] = assistant

    async def on_startup(app: web.Application) -> None:
        await app[ASSISTANT_KEY].start()

    async def on_cleanup(app: web.Application) -> None:
        await app[ASSISTANT_KEY].stop()

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    app.router.add_post("/api/channels/{channel_id}/messages", post_message)
    app.router.add_post("/api/channels/{channel_id}/commit", post_commit)
    app.router.add_delete("/api/channels/{channel_id}", delete_channel)
    app.router.add_get("/api/channels/{channel_id}/events", channel_events)
    app.router.add_post("/api/identity/signal", post_identity_signal)
    app.router.add_post("/api/identity/cookies", post_cookie_change)
    app.router.add_get("/api/session", get_session)
    app.router.add_get("/health", health_check)
    app.router.add_get("/", health_check)
    return app


def main():
    load_dotenv()
    config = AgentConfig()
    setup_logging(None, config.log_level)
    config.validate()

    try:
        logger.info("=" * 70)
        logger.info("Starting Service Request Assistant")
        logger.info("=" * 70)
        logger.info(str(config))
        logger.info(f"Server will listen on: http://{config.server_host}:{config.server_port}")
        logger.info("=" * 70)

        web.run_app(create_app(build_assistant(config)), host=config.server_host, port=config.server_port)

    except Exception as error:
        logger.error(f"Failed to start server: {error}", exc_info=True)
        raise


if __name__ == "__main__":
    main()
