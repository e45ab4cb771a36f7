# authwatch/parsers.py
import logging
import re
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from .models import Event

logger = logging.getLogger(__name__)

# Lines worth a closer look; everything else is dropped before classification
INTEREST_RE = re.compile(r"failed|error|denied", re.IGNORECASE)

IPV4_RE = re.compile(r"\b\d{1,3}(?:\.\d{1,3}){3}\b")
USER_RE = re.compile(r"user=(?P<user>\w+)")
PAREN_RE = re.compile(r"\(.*?\)")
TTY_RE = re.compile(r"tty=(?P<tty>\d+)")

# Evaluated top to bottom, first match wins. "sudo" must come before the
# bare "su" rule because "sudo" contains "su".
SERVICE_RULES: List[Tuple[Callable[[str], bool], str]] = [
    (lambda line: "sshd" in line, "ssh"),
    (lambda line: "sudo" in line, "sudo"),
    (lambda line: "su" in line, "su"),
    (lambda line: "unix_chkpwd" in line, "sudo"),  # password check failures
    (lambda line: "gdm" in line or "gnome" in line, "gnome"),
]

# service tag -> alert type
CATEGORY_BY_SERVICE: Dict[str, str] = {
    "ssh": "ssh",
    "sudo": "privilege",
    "su": "console",
    "gnome": "gui",
    "msfconsole": "msfconsole",
    "unknown": "unknown",
}


def is_interesting(line: str) -> bool:
    return INTEREST_RE.search(line) is not None


def classify(line: str) -> str:
    """Return the service tag of the first rule that matches line."""
    for predicate, tag in SERVICE_RULES:
        if predicate(line):
            return tag
    return "unknown"


def now_iso(now: Optional[datetime] = None) -> str:
    """Local time as ISO-8601 with its UTC offset, e.g. 2024-05-01T10:00:00+02:00"""
    if now is None:
        now = datetime.now()
    if now.tzinfo is None:
        now = now.astimezone()
    return now.isoformat(timespec="seconds")


def extract_ip(line: str) -> Optional[str]:
    m = IPV4_RE.search(line)
    return m.group(0) if m else None


def extract_user(line: str) -> str:
    """
    Value after "user=", else the first parenthesized token without its
    parentheses, else "unknown".
    """
    m = USER_RE.search(line)
    if m:
        return m.group("user")

    m = PAREN_RE.search(line)
    if m:
        inner = m.group(0).strip("()")
        if inner:
            return inner

    return "unknown"


def extract_tty(line: str) -> str:
    m = TTY_RE.search(line)
    return m.group("tty") if m else "unknown"


def _ssh_target(line: str) -> Optional[str]:
    ip = extract_ip(line)
    if ip is None:
        logger.debug("Dropping ssh line without an address: %s", line)
        return None
    logger.info("SSH: suspicious activity from %s", ip)
    return ip


def _privilege_target(line: str) -> str:
    user = extract_user(line)
    logger.info("Privilege escalation attempt detected for user %s", user)
    return user


def _console_target(line: str) -> str:
    tty = extract_tty(line)
    logger.info("Console: physical console event on tty%s", tty)
    return tty


def _gui_target(line: str) -> str:
    logger.info("GUI: event detected in GUI session")
    return "n/a"


def _msfconsole_target(line: str) -> str:
    logger.info("Metasploit: event detected from msfconsole")
    return "n/a"


def _unknown_target(line: str) -> str:
    logger.info("Unrecognized log source: %s", line)
    return "n/a"


TARGET_EXTRACTORS: Dict[str, Callable[[str], Optional[str]]] = {
    "ssh": _ssh_target,
    "sudo": _privilege_target,
    "su": _console_target,
    "gnome": _gui_target,
    "msfconsole": _msfconsole_target,
    "unknown": _unknown_target,
}


def analyze(tag: str, line: str, now: Optional[datetime] = None) -> Optional[Event]:
    """
    Turn one classified line into an Event.

    Returns None only for ssh lines with no IPv4 address; every other
    extraction falls back to "unknown" or "n/a".
    """
    if tag not in TARGET_EXTRACTORS:
        tag = "unknown"

    target = TARGET_EXTRACTORS[tag](line)
    if target is None:
        return None

    return Event(
        service=tag,
        category=CATEGORY_BY_SERVICE[tag],
        target=target,
        raw=line,
        observed_at=now_iso(now),
    )


def parse_line(line: str, now: Optional[datetime] = None) -> Optional[Event]:
    """Filter, classify and analyze a single log line."""
    if not is_interesting(line):
        return None
    return analyze(classify(line), line, now)
