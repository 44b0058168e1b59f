# src/taskflow/notify/matrix_sink.py

from __future__ import annotations

"""
Matrix push transport for task events.

The sink is called from request threads; delivery happens on the notifier's own
event loop (background thread), so emit() only schedules and returns.
"""

import asyncio
import contextlib
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any

from ..tasks.task_models import TaskEvent
from .matrix_client import create_matrix_client
from .sinks import render_event_text

logger = logging.getLogger(__name__)


async def _send_text(client, *, room_id: str, text: str) -> None:
    await client.room_send(
        room_id=room_id,
        message_type="m.room.message",
        content={"msgtype": "m.text", "body": text},
        ignore_unverified_devices=True,
    )


class MatrixNotificationSink:
    """
    Routes an event to the room mapped to its scope user (else the default room).

    Events emitted before a client is attached, or with no room to go to, are dropped.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        *,
        rooms: dict[str, str] | None = None,
        default_room: str | None = None,
        client: Any = None,
    ) -> None:
        self._loop = loop
        self._rooms = dict(rooms or {})
        self._default_room = default_room
        self.client = client

    def room_for(self, user_id: str) -> str | None:
        return self._rooms.get(user_id) or self._default_room

    def emit(self, event: TaskEvent, scope_user_id: str, payload: dict[str, Any]) -> None:
        room_id = self.room_for(scope_user_id)
        if not room_id:
            logger.debug("No Matrix room for user=%s; %s event dropped", scope_user_id, event.value)
            return
        if self._loop.is_closed():
            logger.debug("Matrix notifier loop closed; %s event dropped", event.value)
            return

        text = render_event_text(event, payload)
        fut = asyncio.run_coroutine_threadsafe(self._deliver(room_id, text), self._loop)
        fut.add_done_callback(self._log_failure)

    async def _deliver(self, room_id: str, text: str) -> None:
        client = self.client
        if client is None:
            logger.debug("Matrix client not ready; notification for %s dropped", room_id)
            return
        await _send_text(client, room_id=room_id, text=text)
        logger.debug("Notification sent to %s", room_id)

    @staticmethod
    def _log_failure(fut: Future) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            logger.warning("Matrix notification failed: %r", exc)


async def _run_notifier(settings, sink: MatrixNotificationSink, stop_event: asyncio.Event) -> None:
    """
    init -> attach client to sink -> sync loop until stop_event.

    Syncing keeps the joined-room state current so room_send keeps working.
    """
    client = await create_matrix_client(settings)
    if client is None:
        logger.error("Matrix client creation failed; notifications stay disabled.")
        return

    sink.client = client
    try:
        await client.sync(timeout=30000, full_state=True)
        logger.info("Matrix notifier ready. Joined rooms: %d", len(client.rooms))
        while not stop_event.is_set():
            await client.sync(timeout=30000, full_state=False)
    except asyncio.CancelledError:
        logger.info("Matrix notifier cancelled.")
    except Exception:
        logger.exception("Matrix notifier crashed.")
    finally:
        sink.client = None
        with contextlib.suppress(Exception):
            await client.close()
        logger.info("Matrix notifier stopped.")


@dataclass
class MatrixBackgroundRunner:
    thread: threading.Thread
    loop: asyncio.AbstractEventLoop
    stop_event: asyncio.Event
    sink: MatrixNotificationSink

    def stop(self) -> None:
        try:
            self.loop.call_soon_threadsafe(self.stop_event.set)
        except RuntimeError:
            logger.debug("Failed to signal Matrix stop (loop closed).", exc_info=True)

    def join(self, timeout: float | None = None) -> None:
        self.thread.join(timeout=timeout)


def start_matrix_notifier(settings) -> MatrixBackgroundRunner | None:
    """
    Start the Matrix notifier in a background thread with its own event loop.

    The console REPL blocks on input(), so the async transport cannot share its thread.
    """
    if not settings.matrix_enabled:
        logger.info("Matrix notifications disabled, not starting.")
        return None

    ready = threading.Event()
    holder: dict[str, object] = {}

    def runner() -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        stop_event = asyncio.Event()
        sink = MatrixNotificationSink(
            loop,
            rooms=settings.matrix_notify_rooms,
            default_room=settings.matrix_default_room,
        )

        holder["loop"] = loop
        holder["stop_event"] = stop_event
        holder["sink"] = sink
        ready.set()

        try:
            loop.run_until_complete(_run_notifier(settings, sink, stop_event))
        finally:
            with contextlib.suppress(Exception):
                loop.close()

    t = threading.Thread(target=runner, name="matrix-notifier", daemon=True)
    t.start()

    ready.wait(timeout=5.0)
    loop = holder.get("loop")
    stop_event = holder.get("stop_event")
    sink = holder.get("sink")

    if (
        not isinstance(loop, asyncio.AbstractEventLoop)
        or not isinstance(stop_event, asyncio.Event)
        or not isinstance(sink, MatrixNotificationSink)
    ):
        logger.error("Matrix thread did not initialize properly.")
        return None

    logger.info("Matrix notifier thread started.")
    return MatrixBackgroundRunner(thread=t, loop=loop, stop_event=stop_event, sink=sink)
