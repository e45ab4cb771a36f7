# authwatch/models.py
from dataclasses import dataclass
from typing import Any, Dict, Optional

SERVICE_TAGS = ("ssh", "sudo", "su", "gnome", "msfconsole", "unknown")
ALERT_TYPES = ("ssh", "privilege", "console", "gui", "msfconsole", "unknown")
RISK_LEVELS = ("critical", "high", "medium", "low", "info")


@dataclass(frozen=True)
class Fingerprint:
    device: int
    inode: int
    size: int

    def same_identity(self, other: Optional["Fingerprint"]) -> bool:
        """Size is ignored here, only device+inode identify the file."""
        if other is None:
            return False
        return self.device == other.device and self.inode == other.inode


@dataclass(frozen=True)
class SourceState:
    path: str
    last_offset: int = 0          # byte offset just past the last consumed line
    fingerprint: Optional[Fingerprint] = None

    def advanced(self, offset: int, fingerprint: Fingerprint) -> "SourceState":
        return SourceState(path=self.path, last_offset=offset, fingerprint=fingerprint)

    def reset(self) -> "SourceState":
        return SourceState(path=self.path, last_offset=0, fingerprint=None)


@dataclass(frozen=True)
class RawLine:
    text: str
    source: SourceState
    after: Optional[SourceState] = None   # state once this line has been handled


@dataclass(frozen=True)
class Event:
    service: str           # classifier tag, for example "sudo"
    category: str          # alert type, for example "privilege"
    target: str            # ip, user, tty, "unknown" or "n/a"
    raw: str
    observed_at: str       # ISO-8601 with UTC offset


@dataclass(frozen=True)
class Alert:
    timestamp: str
    alert_type: str
    target: str
    risk_level: str
    raw_log: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "alert_type": self.alert_type,
            "target": self.target,
            "risk_level": self.risk_level,
            "raw_log": self.raw_log,
        }
