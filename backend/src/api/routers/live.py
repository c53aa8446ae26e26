"""
Live dashboard socket.

Each connection runs its own BookmarkReconciler and pushes the reconciled
state to the browser whenever it changes. The browser sends commands; it
never edits the list itself.
"""
import asyncio
import logging
from typing import Annotated, Literal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from api.dependencies import (
    get_bookmark_store,
    get_change_feed,
    get_session_provider,
    get_settings,
    session_from_token,
)
from core.config import Settings
from core.session import SessionProvider
from schemas.auth import AuthEvent, AuthStateChange
from services.bookmark_service import BookmarkStore
from services.change_feed import ChangeFeed
from services.reconciler import BookmarkReconciler

logger = logging.getLogger(__name__)

router = APIRouter(tags=["live"])

# Application-defined close code: no valid session
CLOSE_UNAUTHORIZED = 4401
CLOSE_UNAVAILABLE = 1013


class CreateCommand(BaseModel):
    """Add a bookmark."""

    action: Literal["create"]
    title: str = ""
    url: str = ""


class DeleteCommand(BaseModel):
    """Delete a bookmark."""

    action: Literal["delete"]
    id: UUID


class DismissErrorCommand(BaseModel):
    """Clear the error banner."""

    action: Literal["dismiss_error"]


LiveCommand = Annotated[
    CreateCommand | DeleteCommand | DismissErrorCommand,
    Field(discriminator="action"),
]

_command_adapter: TypeAdapter[LiveCommand] = TypeAdapter(LiveCommand)


def parse_command(raw: str) -> CreateCommand | DeleteCommand | DismissErrorCommand | None:
    """Parse one JSON command; None when it is malformed or unknown."""
    try:
        return _command_adapter.validate_json(raw)
    except ValidationError as e:
        logger.warning("Ignoring invalid live command: %s", e.errors()[0].get("msg"))
        return None


def _log_task_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Live command failed", exc_info=task.exception())


@router.websocket("/dashboard/live")
async def dashboard_live(  # noqa: PLR0915
    websocket: WebSocket,
    settings: Settings = Depends(get_settings),
    provider: SessionProvider = Depends(get_session_provider),
    store: BookmarkStore = Depends(get_bookmark_store),
    feed: ChangeFeed = Depends(get_change_feed),
) -> None:
    """Serve one open dashboard tab."""
    await websocket.accept()
    try:
        session = session_from_token(
            provider, settings, None, websocket.cookies.get(settings.session_cookie_name),
        )
    except HTTPException as e:
        logger.warning("Live view session check failed: %s", e.detail)
        await websocket.close(code=CLOSE_UNAVAILABLE)
        return
    if session is None:
        await websocket.close(code=CLOSE_UNAUTHORIZED, reason="Not authenticated")
        return

    dirty = asyncio.Event()
    signed_out = asyncio.Event()
    reconciler = BookmarkReconciler(
        store,
        feed,
        fallback_delay=settings.fallback_delay,
        on_change=dirty.set,
    )
    commands: set[asyncio.Task] = set()

    async def on_auth_change(change: AuthStateChange) -> None:
        if change.event != AuthEvent.SIGNED_OUT or signed_out.is_set():
            return
        logger.info("Session ended for %s; closing live view", change.user_id)
        await reconciler.change_identity(None)
        signed_out.set()
        dirty.set()

    async def send_updates() -> None:
        while True:
            await dirty.wait()
            dirty.clear()
            if signed_out.is_set():
                await websocket.send_json({"type": "redirect", "location": "/"})
                await websocket.close()
                return
            state = reconciler.snapshot().model_dump(mode="json")
            await websocket.send_json({"type": "state", **state})

    async def receive_commands() -> None:
        while True:
            command = parse_command(await websocket.receive_text())
            if command is None:
                continue
            if isinstance(command, DismissErrorCommand):
                reconciler.dismiss_error()
                continue
            if isinstance(command, CreateCommand):
                coro = reconciler.create(command.title, command.url)
            else:
                coro = reconciler.delete(command.id)
            # Run writes concurrently so a slow insert does not hold up deletes
            task = asyncio.create_task(coro)
            commands.add(task)
            task.add_done_callback(commands.discard)
            task.add_done_callback(_log_task_failure)

    auth_subscription = await provider.on_auth_state_change(session.user_id, on_auth_change)
    sender = asyncio.create_task(send_updates())
    receiver = asyncio.create_task(receive_commands())
    try:
        await reconciler.start(session)
        done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                raise error
    finally:
        logger.debug("Live view for %s disconnected", session.user_id)
        for task in (sender, receiver):
            task.cancel()
        await asyncio.gather(sender, receiver, return_exceptions=True)
        if commands:
            # Let writes already sent to the store finish; the closed reconciler ignores their results
            await asyncio.gather(*commands, return_exceptions=True)
        await reconciler.close()
        await auth_subscription.unsubscribe()
