# authwatch - real-time authentication log monitor

__version__ = "0.1.0"

from .alerts import AlertEmitter, build_alert, serialize_alert
from .models import Alert, Event, Fingerprint, RawLine, SourceState
from .parsers import analyze, classify, is_interesting, parse_line
from .rule_engine import calculate_risk
from .watcher import Watcher, process_cycle

__all__ = [
    "Alert",
    "AlertEmitter",
    "Event",
    "Fingerprint",
    "RawLine",
    "SourceState",
    "Watcher",
    "analyze",
    "build_alert",
    "calculate_risk",
    "classify",
    "is_interesting",
    "parse_line",
    "process_cycle",
    "serialize_alert",
]
