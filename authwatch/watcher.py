# authwatch/watcher.py
"""
Real-time watch loop.

One SourceWorker thread per log source owns that source's SourceState.
A watchdog Observer turns filesystem notifications into wake-ups on the
worker's queue; each wake-up runs one processing cycle:

    read delta -> filter -> classify -> analyze -> score -> emit

The state advances past each line once its alert has been emitted.
"""
import logging
import os
import queue
import threading
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .alerts import AlertEmitter
from .errors import SourceUnavailableError, WatchFacilityError
from .log_ingestor import initial_state, read_delta_with_retry, read_renamed
from .models import Alert, RawLine, SourceState
from .parsers import parse_line

logger = logging.getLogger(__name__)

_STOP = object()


def emit_lines(
    lines: List[RawLine],
    emitter: AlertEmitter,
    progress: Optional[Callable[[SourceState], None]] = None,
) -> List[Alert]:
    """
    Emit the alert for each qualifying line, in order. progress is told
    the state after every line handled, so an emit that raises leaves the
    caller positioned on the line that failed and nothing before it is
    emitted twice.
    """
    alerts: List[Alert] = []
    for raw in lines:
        event = parse_line(raw.text)
        if event is not None:
            alerts.append(emitter.emit(event))
        if progress is not None and raw.after is not None:
            progress(raw.after)
    return alerts


def process_cycle(
    state: SourceState,
    emitter: AlertEmitter,
    retry_delay: float = 0.5,
    progress: Optional[Callable[[SourceState], None]] = None,
) -> Tuple[SourceState, List[Alert]]:
    """
    Run one processing cycle for a source and return the next state and
    the alerts emitted, in line order.

    An unreadable source is logged and skipped; the state is returned
    unchanged so the same delta is read on the next notification.
    """
    try:
        lines, next_state = read_delta_with_retry(state, retry_delay)
    except SourceUnavailableError as e:
        logger.warning("%s; will retry on next change", e)
        return state, []

    alerts = emit_lines(lines, emitter, progress)

    if lines:
        logger.debug(
            "%s: %d new line(s), %d alert(s), offset %d -> %d",
            state.path, len(lines), len(alerts), state.last_offset, next_state.last_offset,
        )
    return next_state, alerts


class SourceWorker(threading.Thread):
    """Owns the state of one log source and processes its notifications in order."""

    def __init__(self, state: SourceState, emitter: AlertEmitter, retry_delay: float = 0.5):
        super().__init__(name=f"authwatch:{os.path.basename(state.path)}", daemon=True)
        self.state = state
        self.emitter = emitter
        self.retry_delay = retry_delay
        self._queue: "queue.Queue" = queue.Queue()

    def notify(self) -> None:
        self._queue.put(None)

    def notify_moved(self, dest_path: str) -> None:
        """The watched file was renamed away (rotation by rename)."""
        self._queue.put(dest_path)

    def stop(self) -> None:
        # queued behind pending notifications, so nothing already seen is dropped
        self._queue.put(_STOP)

    def run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            try:
                if item is None:
                    self.run_cycle()
                else:
                    self.drain_rotated(item)
            except Exception:
                # state stops at the failed line, which is retried next time
                logger.exception("Processing cycle failed for %s", self.state.path)

    def _advance(self, state: SourceState) -> None:
        self.state = state

    def run_cycle(self) -> List[Alert]:
        self.state, alerts = process_cycle(
            self.state, self.emitter, self.retry_delay, progress=self._advance
        )
        return alerts

    def drain_rotated(self, dest_path: str) -> List[Alert]:
        """
        Finish the lines appended to the followed file before it was
        renamed to dest_path.

        Does nothing when the state already follows another file, for
        example because a cycle saw the replacement first and drained the
        old file itself. The state keeps the old identity, so the next
        cycle sees the new file as a rotation and reads it from the start.
        """
        if self.state.fingerprint is None:
            return []
        try:
            lines = read_renamed(self.state, dest_path)
        except OSError as e:
            logger.warning("Rotated file %s vanished before it could be drained: %s", dest_path, e)
            return []

        if lines:
            logger.info("%s rotated to %s; draining %d line(s)", self.state.path, dest_path, len(lines))
        return emit_lines(lines, self.emitter, self._advance)


class SourceEventHandler(FileSystemEventHandler):
    """Routes watchdog events for watched paths to their workers."""

    def __init__(self, workers: Dict[str, SourceWorker]):
        super().__init__()
        self.workers = workers

    def _worker_for(self, path) -> Optional[SourceWorker]:
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        return self.workers.get(os.path.abspath(path))

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        worker = self._worker_for(event.src_path)
        if worker is not None:
            worker.notify()

    def on_created(self, event: FileSystemEvent) -> None:
        self.on_modified(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        moved_away = self._worker_for(event.src_path)
        if moved_away is not None:
            moved_away.notify_moved(os.fsdecode(event.dest_path))
        moved_in = self._worker_for(event.dest_path)
        if moved_in is not None:
            moved_in.notify()


class Watcher:
    """
    Watches one or more log sources and emits an alert for every
    qualifying line appended to them.

    Sources start after their last complete line. A missing source raises
    SourceMissingError from start(); a notification facility that cannot
    be set up raises WatchFacilityError.
    """

    def __init__(self, paths: Iterable[str], emitter: AlertEmitter, retry_delay: float = 0.5):
        self.paths = [os.path.abspath(p) for p in paths]
        self.emitter = emitter
        self.retry_delay = retry_delay
        self.workers: Dict[str, SourceWorker] = {}
        self._observer = None
        self._stop_requested = False
        self._stopped = threading.Event()

    def start(self) -> None:
        workers = {
            path: SourceWorker(initial_state(path), self.emitter, self.retry_delay)
            for path in self.paths
        }

        observer = Observer()
        handler = SourceEventHandler(workers)
        try:
            for directory in sorted({os.path.dirname(p) for p in self.paths}):
                observer.schedule(handler, directory, recursive=False)
            observer.start()
        except OSError as e:
            raise WatchFacilityError(f"cannot watch log sources: {e}") from e

        for worker in workers.values():
            worker.start()

        self.workers = workers
        self._observer = observer
        self._stop_requested = False
        self._stopped.clear()
        logger.info("Watching %s", ", ".join(self.paths))

    def stop(self, timeout: float = 5.0) -> None:
        """
        Stop listening for changes, then let every worker finish the
        notifications it already has before returning.
        """
        if self._stopped.is_set():
            return

        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout)
            self._observer = None

        for worker in self.workers.values():
            worker.stop()
        for worker in self.workers.values():
            worker.join(timeout)
            if worker.is_alive():
                logger.warning("Worker for %s did not finish within %.1fs", worker.state.path, timeout)

        self._stopped.set()
        logger.info("Stopped watching")

    def states(self) -> Dict[str, SourceState]:
        return {path: worker.state for path, worker in self.workers.items()}

    def request_stop(self) -> None:
        """
        Ask run_forever() to stop. Only sets a flag, so it is safe to call
        from a signal handler.
        """
        self._stop_requested = True

    def run_forever(self, check_interval: float = 0.5) -> None:
        """Start (if needed) and block until stop(), request_stop() or Ctrl+C."""
        if self._observer is None:
            self.start()
        try:
            while not self._stop_requested:
                if self._stopped.wait(check_interval):
                    return
        except KeyboardInterrupt:
            logger.info("Interrupted")
        self.stop()

    def __enter__(self) -> "Watcher":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
