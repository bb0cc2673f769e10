"""Graceful shutdown on SIGINT/SIGTERM.

The first signal sets ``app.state.shutdown_event``; the lifespan then stops the
scheduler and cancels running sync jobs, each of which records a ``cancelled``
failure and releases its lease. A second signal restores the previous handler
and re-delivers itself, so an operator can force exit without waiting for the
drain.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from starlette.applications import Starlette


logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def install_shutdown_signals(app: Starlette) -> asyncio.Event:
    """Attach the handlers once and return the shared shutdown event."""
    existing = getattr(app.state, "shutdown_event", None)
    if isinstance(existing, asyncio.Event):
        return existing

    shutdown_event = asyncio.Event()
    previous: dict[signal.Signals, Any] = {}

    def _handler(signum: int, frame: object | None) -> None:
        sig = signal.Signals(signum)
        if shutdown_event.is_set():
            logger.warning("Received %s again, forcing exit without draining sync jobs", sig.name)
            signal.signal(sig, previous.get(sig) or signal.SIG_DFL)
            signal.raise_signal(sig)
            return
        app.state.shutdown_signal = sig.name
        logger.info("Received %s, draining sync jobs before exit", sig.name)
        shutdown_event.set()

    for sig in HANDLED_SIGNALS:
        try:
            previous[sig] = signal.signal(sig, _handler)
        except ValueError:  # pragma: no cover - only the main thread may install handlers
            logger.debug("Cannot install %s handler outside the main thread", sig.name)

    app.state.shutdown_event = shutdown_event
    return shutdown_event
