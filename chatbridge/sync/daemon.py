from __future__ import annotations

import datetime as dt
import logging
import queue
import threading
import time
import traceback
from collections.abc import Callable
from pathlib import Path
from typing import Any

from ..errors import AuthError, ProviderError
from ..realtime import STATUS_ONLINE
from .engine import SyncEngine

logger = logging.getLogger(__name__)

DAEMON_LOG_DIR = Path.home() / ".chatbridge"


def sync_daemon_tick(engine: SyncEngine) -> dict[str, Any]:
    """Push queued local intent, then pull anything the stream missed."""

    pushed = engine.flush()
    pulled = engine.catch_up()
    return {"pushed": pushed, "pulled": pulled}


def _record_error(engine: SyncEngine, exc: BaseException) -> None:
    tb = traceback.format_exc()
    engine.store.set_sync_daemon_error(str(exc), tb)
    _append_sync_daemon_log(tb)


def run_sync_daemon(
    engine: SyncEngine,
    interval_s: int,
    *,
    stop_event: threading.Event | None = None,
    on_batch: Callable[[dict[str, Any], dict[str, int]], None] | None = None,
    on_status: Callable[[str], None] | None = None,
) -> None:
    """Run the realtime stream plus periodic reconciliation until stopped.

    Stream callbacks arrive on background threads and are queued here, so every
    cache write happens on the calling thread.
    """

    inbox: queue.Queue[tuple[str, Any]] = queue.Queue()
    stop = stop_event or threading.Event()
    engine.start(
        lambda batch: inbox.put(("batch", batch)),
        on_status=lambda status: inbox.put(("status", status)),
        on_error=lambda exc: inbox.put(("error", exc)),
    )
    next_tick = time.monotonic()
    try:
        while not stop.is_set():
            try:
                if time.monotonic() >= next_tick:
                    next_tick = time.monotonic() + max(1, interval_s)
                    sync_daemon_tick(engine)
                    engine.store.set_sync_daemon_ok()
                timeout = max(0.0, min(1.0, next_tick - time.monotonic()))
                try:
                    kind, item = inbox.get(timeout=timeout)
                except queue.Empty:
                    continue
                if kind == "batch":
                    result = engine.apply_batch(item, live=True)
                    if on_batch is not None:
                        on_batch(item, result)
                elif kind == "status":
                    engine.set_connection_status(item)
                    if on_status is not None:
                        on_status(item)
                    if item == STATUS_ONLINE:
                        # Reconnected; pull whatever arrived while offline.
                        next_tick = time.monotonic()
                elif kind == "error":
                    if isinstance(item, ProviderError) and item.is_auth_error:
                        engine.handle_auth_error(item)
                    logger.warning("sync: stream error: %s", item)
            except AuthError as exc:
                _record_error(engine, exc)
                logger.warning("sync: stopping, %s", exc)
                return
            except (ProviderError, OSError) as exc:
                _record_error(engine, exc)
                logger.warning("sync: pass failed: %s", exc)
    finally:
        engine.stop()
        engine.set_connection_status("offline")


def _append_sync_daemon_log(message: str) -> None:
    try:
        DAEMON_LOG_DIR.mkdir(parents=True, exist_ok=True)
        log_path = DAEMON_LOG_DIR / "sync-daemon.log"
        ts = dt.datetime.now(dt.UTC).isoformat()
        with log_path.open("a", encoding="utf-8", errors="ignore") as handle:
            handle.write(f"\n[{ts}]\n{message}\n")
    except OSError:
        return
