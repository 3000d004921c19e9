# src/taskpulse/realtime/runner.py

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from dataclasses import dataclass

from ..connectors.matrix_push import start_matrix_push
from ..core.state import AppState
from .server import serve_forever

logger = logging.getLogger(__name__)


async def run_service(state: AppState, stop_event: asyncio.Event) -> None:
    """
    Server + reconciler (+ optional Matrix push) on the current loop.

    Shutdown model: the owner sets stop_event; everything started here is
    torn down before returning.
    """
    messenger = None
    try:
        messenger = await start_matrix_push(state.settings)
    except Exception:
        logger.exception("Matrix push failed to start; continuing without it.")
    state.reconciler.set_messenger(messenger)

    try:
        await serve_forever(state, stop_event)
    finally:
        state.reconciler.set_messenger(None)
        if messenger is not None:
            with contextlib.suppress(Exception):
                await messenger.close()


@dataclass
class ServiceBackgroundRunner:
    thread: threading.Thread
    loop: asyncio.AbstractEventLoop
    stop_event: asyncio.Event

    def stop(self) -> None:
        try:
            self.loop.call_soon_threadsafe(self.stop_event.set)
        except RuntimeError:
            logger.debug("Service loop already closed.", exc_info=True)

    def join(self, timeout: float | None = None) -> None:
        self.thread.join(timeout=timeout)

    def is_alive(self) -> bool:
        return self.thread.is_alive()


def start_service_in_background(state: AppState) -> ServiceBackgroundRunner | None:
    """
    Start the async service in a background thread so the blocking console
    REPL (input()) can own the main thread.
    """
    ready = threading.Event()
    holder: dict[str, object] = {}

    def runner() -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        stop_event = asyncio.Event()

        holder["loop"] = loop
        holder["stop_event"] = stop_event
        ready.set()

        try:
            loop.run_until_complete(run_service(state, stop_event))
        except Exception:
            logger.exception("Service loop crashed.")
        finally:
            with contextlib.suppress(Exception):
                loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()

    t = threading.Thread(target=runner, name="taskpulse-service", daemon=True)
    t.start()

    ready.wait(timeout=5.0)
    loop = holder.get("loop")
    stop_event = holder.get("stop_event")

    if not isinstance(loop, asyncio.AbstractEventLoop) or not isinstance(stop_event, asyncio.Event):
        logger.error("Service thread did not initialize properly.")
        return None

    logger.info("Service background thread started.")
    return ServiceBackgroundRunner(thread=t, loop=loop, stop_event=stop_event)
