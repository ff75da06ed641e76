"""Bounded background delivery of telemetry records.

Callers hand records to ``log_event`` and move on; a single daemon thread
passes them to the plugin. ``flush`` waits until everything queued so far has
been exported, and ``shutdown`` flushes before stopping, so no record is lost
on a normal exit.
"""

import logging
import queue
import threading
from typing import Optional

from .events import TelemetryEvent
from .null_plugin import NullTelemetryPlugin
from .plugin import TelemetryPlugin

logger = logging.getLogger(__name__)

_STOP = object()


class TelemetryQueue:
    """Fire-and-forget front end for a TelemetryPlugin.

    Args:
        plugin: The sink. Defaults to the no-op plugin.
        maxsize: Queue bound. When full, ``log_event`` waits up to
            ``put_timeout`` seconds and then drops the record with a warning.
        put_timeout: Seconds to wait for room in a full queue.
    """

    def __init__(
        self,
        plugin: Optional[TelemetryPlugin] = None,
        maxsize: int = 1000,
        put_timeout: float = 1.0,
    ):
        self._plugin = plugin if plugin is not None else NullTelemetryPlugin()
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._put_timeout = put_timeout
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._closed = False
        self.dropped = 0

    @property
    def plugin(self) -> TelemetryPlugin:
        return self._plugin

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(
                    target=self._run, name="agentloop-telemetry", daemon=True
                )
                self._thread.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._plugin.emit(item)
            except Exception as exc:
                logger.warning(f"Telemetry export failed for {getattr(item, 'name', item)}: {exc}")
            finally:
                self._queue.task_done()

    def log_event(self, event: TelemetryEvent) -> None:
        """Queue a record for export. Never raises."""
        if self._closed:
            logger.debug(f"Telemetry queue closed, dropping {event.name}")
            return
        self._ensure_worker()
        try:
            self._queue.put(event, timeout=self._put_timeout)
        except queue.Full:
            self.dropped += 1
            logger.warning(f"Telemetry queue full, dropped {event.name} ({self.dropped} dropped so far)")

    def flush(self) -> None:
        """Block until every queued record has been handed to the plugin."""
        if self._thread is None:
            return
        self._queue.join()

    def shutdown(self) -> None:
        """Flush, stop the worker thread and shut the plugin down."""
        if self._closed:
            return
        self._closed = True
        if self._thread is not None and self._thread.is_alive():
            self._queue.put(_STOP)
            self._thread.join()
        self._plugin.shutdown()
