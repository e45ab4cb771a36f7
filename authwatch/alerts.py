# authwatch/alerts.py
"""
Alert construction and output.

Every Event becomes exactly one Alert, which is serialized as one JSON
object per line. Sinks only ever append.
"""
import json
import logging
import sys
import threading
from typing import IO, List, Optional

from .models import Alert, Event
from .rule_engine import calculate_risk
from .storage import SQLiteStorage

logger = logging.getLogger(__name__)


def build_alert(event: Event) -> Alert:
    return Alert(
        timestamp=event.observed_at,
        alert_type=event.category,
        target=event.target,
        risk_level=calculate_risk(event.category),
        raw_log=event.raw,
    )


def serialize_alert(alert: Alert) -> str:
    """
    Render an alert as a single JSON line. json.dumps escapes quotes,
    backslashes and control characters in raw_log, and ensure_ascii keeps
    the record on one physical line whatever bytes the log contained.
    """
    return json.dumps(alert.to_dict(), ensure_ascii=True)


class StreamSink:
    """Writes alerts to an already open text stream (stdout by default)."""

    def __init__(self, stream: Optional[IO[str]] = None) -> None:
        self.stream = stream if stream is not None else sys.stdout

    def write(self, alert: Alert) -> None:
        self.stream.write(serialize_alert(alert) + "\n")
        self.stream.flush()

    def close(self) -> None:
        pass


class JsonlFileSink:
    """Appends alerts to a JSON Lines file."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._fh = open(path, "a", encoding="utf-8")

    def write(self, alert: Alert) -> None:
        self._fh.write(serialize_alert(alert) + "\n")
        self._fh.flush()

    def close(self) -> None:
        self._fh.close()


class SQLiteSink:
    def __init__(self, db_path: str) -> None:
        self.storage = SQLiteStorage(db_path)
        self.storage.connect()
        self.storage.init_db()

    def write(self, alert: Alert) -> None:
        self.storage.insert_alert(alert)

    def close(self) -> None:
        self.storage.close()


class AlertEmitter:
    """
    Builds the alert for an event and hands it to every sink in order.

    Several source workers may share one emitter, so writes are
    serialized to keep each record whole.
    """

    def __init__(self, sinks: Optional[List] = None) -> None:
        self.sinks = sinks if sinks is not None else [StreamSink()]
        self._lock = threading.Lock()

    def emit(self, event: Event) -> Alert:
        alert = build_alert(event)
        with self._lock:
            for sink in self.sinks:
                sink.write(alert)
        logger.debug("Emitted %s alert (risk %s) for %s", alert.alert_type, alert.risk_level, alert.target)
        return alert

    def close(self) -> None:
        for sink in self.sinks:
            sink.close()
