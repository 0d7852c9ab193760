"""
FastAPI relay server for end-to-end encrypted chat.

This server:
- Creates short-lived two-party chat sessions identified by unguessable tokens
- Relays public keys between the two parties (never stores them)
- Relays encrypted messages via WebSocket (never decrypts or stores them)
- Expires sessions 24 hours after creation
"""

import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Mapping, Optional

import structlog
from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException
from fastapi.responses import HTMLResponse, RedirectResponse

from .config import Settings
from .connections import ConnectionContext, ConnectionManager
from .errors import InvalidEvent, RelayError
from .log import configure_logging, short_id
from .protocol import (
    CreateSession,
    EncryptedMessage,
    JoinSession,
    KeyExchange,
    PeerJoined,
    PeerLeft,
    Ping,
    Pong,
    SessionCreated,
    SessionJoined,
    Typing,
    parse_client_event,
)
from .relay import KeyExchangeRelay, MessageRelay
from .sessions import Role, SessionRegistry, is_valid_session_id

logger = structlog.get_logger(__name__)

WEB_DIR = Path(__file__).resolve().parent.parent / "web"


def build_share_link(settings: Settings, headers: Mapping[str, str], scheme: str, session_id: str) -> str:
    """
    Build the link a party shares to invite the other.

    Uses BASE_URL when configured, otherwise the request's forwarded protocol
    (or own scheme) and Host header.
    """
    if settings.base_url:
        origin = settings.base_url
    else:
        forwarded = headers.get("x-forwarded-proto")
        if forwarded:
            protocol = forwarded.split(",")[0].strip()
        else:
            protocol = "https" if scheme in ("https", "wss") else "http"
        host = headers.get("host") or f"localhost:{settings.port}"
        origin = f"{protocol}://{host}"
    return f"{origin}/chat/{session_id}"


def _read_page(name: str, fallback: str) -> str:
    try:
        return (WEB_DIR / name).read_text(encoding="utf-8")
    except FileNotFoundError:
        return fallback


def create_app(settings: Optional[Settings] = None, registry: Optional[SessionRegistry] = None) -> FastAPI:
    """
    Build the relay application.

    Args:
        settings: Configuration; read from the environment when omitted
        registry: Session registry; a fresh one is created when omitted
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level, settings.log_json)

    registry = registry or SessionRegistry(expiry=settings.session_expiry)
    manager = ConnectionManager()
    key_relay = KeyExchangeRelay(registry, manager)
    message_relay = MessageRelay(registry, manager)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        sweeper = asyncio.create_task(registry.run_sweeper(settings.sweep_interval_seconds))
        logger.info("relay_started", sweep_interval=settings.sweep_interval_seconds)
        yield
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        logger.info("relay_stopped")

    app = FastAPI(
        title="SecureChat Relay",
        description="Two-party end-to-end encrypted chat relay",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.registry = registry
    app.state.manager = manager

    @app.get("/", response_class=HTMLResponse)
    async def get_home():
        """Serve the landing page"""
        return _read_page("index.html", "<h1>SecureChat</h1><p><a href=\"/chat/new\">Start a new chat</a></p>")

    @app.get("/health")
    async def health():
        return {"status": "ok", "sessions": len(registry)}

    @app.get("/chat/new")
    async def new_chat():
        """Create a session and redirect to its page"""
        session_id = registry.create()
        return RedirectResponse(url=f"/chat/{session_id}", status_code=302)

    @app.get("/chat/{session_id}", response_class=HTMLResponse)
    async def get_chat(session_id: str):
        """Serve the chat page for a well-formed session id"""
        if not is_valid_session_id(session_id):
            raise HTTPException(status_code=400, detail="Invalid session ID")
        return _read_page("chat.html", "<h1>Web interface not found. Use the CLI client instead.</h1>")

    async def leave_session(ctx: ConnectionContext):
        """Drop ctx from its session and tell whoever is left"""
        session_id, peer_id = ctx.session_id, ctx.peer_id
        if not session_id:
            return
        ctx.unbind()

        remaining = registry.participants(session_id) - {ctx.connection_id}
        registry.remove(session_id, ctx.connection_id)
        for connection_id in remaining:
            await manager.send_message(connection_id, PeerLeft(peer_id=peer_id).model_dump())

    async def admit(websocket: WebSocket, ctx: ConnectionContext, session_id: str, reply):
        """
        Admit ctx to session_id, answer the caller and notify the peer.

        The shareable link goes to whichever party this admission left alone
        in the session, whether it came in through create or join. A rejected
        admission leaves the connection's current session untouched.
        """
        role = registry.admit(session_id, ctx.connection_id)
        rejoined = ctx.session_id == session_id

        if ctx.session_id and not rejoined:
            await leave_session(ctx)
        peer_id = ctx.peer_id if rejoined else ctx.bind(session_id)

        link = None
        if role is Role.INITIATOR:
            link = build_share_link(settings, websocket.headers, websocket.url.scheme, session_id)

        await websocket.send_json(reply(
            session_id=session_id,
            peer_id=peer_id,
            role=role.value,
            link=link
        ).model_dump())

        if rejoined:
            return

        for connection_id in registry.participants(session_id) - {ctx.connection_id}:
            await manager.send_message(connection_id, PeerJoined(peer_id=peer_id).model_dump())

        logger.info(
            "session_joined",
            session=short_id(session_id),
            role=role.value,
            participants=len(registry.participants(session_id))
        )

    async def dispatch(websocket: WebSocket, ctx: ConnectionContext, event):
        if isinstance(event, CreateSession):
            await admit(websocket, ctx, registry.create(), SessionCreated)
        elif isinstance(event, JoinSession):
            await admit(websocket, ctx, event.session_id, SessionJoined)
        elif isinstance(event, KeyExchange):
            await key_relay.forward(ctx, event.public_key)
        elif isinstance(event, EncryptedMessage):
            await message_relay.relay(ctx, event.envelope())
        elif isinstance(event, Typing):
            await message_relay.typing(ctx, event.is_typing)
        elif isinstance(event, Ping):
            await websocket.send_json(Pong().model_dump())

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        WebSocket endpoint for session setup and relaying.

        Protocol:
        1. Client sends {"type": "create_session"} or
           {"type": "join_session", "session_id": "..."}
        2. Server answers session_created / session_joined (with a link for
           the party that is alone in the session) or error
        3. Both clients send {"type": "key_exchange", "public_key": "..."},
           forwarded verbatim to the other party
        4. Clients send {"type": "message", "ciphertext", "nonce", "auth_tag"},
           forwarded with a relay_timestamp
        """
        await websocket.accept()
        ctx = ConnectionContext()
        manager.register(ctx.connection_id, websocket)
        log = logger.bind(connection=ctx.connection_id[:8])
        log.info("client_connected")

        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(frame.get("code", 1000))
                raw = frame.get("text")
                try:
                    if raw is None:
                        raise InvalidEvent("Binary frames are not supported")
                    try:
                        data = json.loads(raw)
                    except ValueError as e:
                        raise InvalidEvent() from e
                    await dispatch(websocket, ctx, parse_client_event(data))
                except RelayError as e:
                    log.info("relay_rejected", code=e.code, session=short_id(ctx.session_id))
                    await websocket.send_json(e.to_dict())

        except WebSocketDisconnect:
            pass
        except Exception:
            log.exception("websocket_error")
        finally:
            manager.disconnect(ctx.connection_id)
            await leave_session(ctx)
            log.info("client_disconnected")

    return app


app = create_app()


def main():
    """Run the relay with uvicorn"""
    import uvicorn
    settings = app.state.settings
    logger.info("starting_relay", host=settings.host, port=settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
