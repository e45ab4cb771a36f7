# authwatch/log_ingestor.py
import logging
import os
import time
from typing import BinaryIO, Callable, List, Optional, Tuple

from .errors import SourceMissingError, SourceUnavailableError
from .models import Fingerprint, RawLine, SourceState

logger = logging.getLogger(__name__)

# Default log source on Debian-family systems (Kali, Ubuntu)
DEFAULT_LOG_SOURCES: List[str] = ["/var/log/auth.log"]

_TAIL_BLOCK = 4096


def _fingerprint_of(st: os.stat_result) -> Fingerprint:
    return Fingerprint(device=st.st_dev, inode=st.st_ino, size=st.st_size)


def fingerprint(path: str) -> Fingerprint:
    """Return the current device+inode+size of path. Raises OSError."""
    return _fingerprint_of(os.stat(path))


def _last_line_end(f: BinaryIO, size: int) -> int:
    """Offset just past the last newline in the first size bytes of f, or 0."""
    pos = size
    while pos > 0:
        start = max(0, pos - _TAIL_BLOCK)
        f.seek(start)
        block = f.read(pos - start)
        idx = block.rfind(b"\n")
        if idx != -1:
            return start + idx + 1
        pos = start
    return 0


def initial_state(path: str) -> SourceState:
    """
    Build the state for a source positioned after its last complete line,
    so historical entries are never reported. A line still being written
    at startup is reported whole once it is finished.
    """
    if not os.path.isfile(path):
        raise SourceMissingError(path)
    with open(path, "rb") as f:
        fp = _fingerprint_of(os.fstat(f.fileno()))
        offset = _last_line_end(f, fp.size)
    logger.debug("Initialized %s at offset %d (inode %d)", path, offset, fp.inode)
    return SourceState(path=path, last_offset=offset, fingerprint=fp)


def is_rotated(state: SourceState, current: Fingerprint) -> bool:
    """
    True when the file was replaced (identity changed) or truncated in
    place (shorter than what was already consumed).
    """
    if state.fingerprint is not None and not current.same_identity(state.fingerprint):
        return True
    return current.size < state.last_offset


def _read_lines(
    f: BinaryIO,
    start: int,
    source: SourceState,
    state_at: Callable[[int], SourceState],
) -> Tuple[List[RawLine], int]:
    """
    Read the complete lines of f from start. Each RawLine carries the
    state to adopt once it has been handled, so progress can be saved
    line by line. Returns the lines and the offset past the last one.
    """
    f.seek(start)
    data = f.read()

    end = data.rfind(b"\n")
    if end == -1:
        return [], start

    lines: List[RawLine] = []
    offset = start
    for chunk in data[: end + 1].split(b"\n")[:-1]:
        offset += len(chunk) + 1
        text = chunk.decode("utf-8", errors="replace").rstrip("\r")
        lines.append(RawLine(text=text, source=source, after=state_at(offset)))
    return lines, offset


def find_renamed(state: SourceState) -> Optional[str]:
    """
    Look in the source's directory for the file it was renamed to
    (auth.log -> auth.log.1), matching on device+inode.
    """
    if state.fingerprint is None:
        return None
    directory = os.path.dirname(os.path.abspath(state.path))
    try:
        with os.scandir(directory) as entries:
            for entry in entries:
                if entry.inode() != state.fingerprint.inode:
                    continue
                if not entry.is_file(follow_symlinks=False):
                    continue
                if entry.stat(follow_symlinks=False).st_dev == state.fingerprint.device:
                    return entry.path
    except OSError as e:
        logger.debug("Could not scan %s for rotated file: %s", directory, e)
    return None


def read_renamed(state: SourceState, renamed_path: str) -> List[RawLine]:
    """
    Lines appended to the file this state follows after it was renamed to
    renamed_path. The per-line states keep the original path and identity,
    so an interrupted drain resumes in the renamed file.
    Returns [] if renamed_path is no longer that file.
    """
    with open(renamed_path, "rb") as f:
        current = _fingerprint_of(os.fstat(f.fileno()))
        if not current.same_identity(state.fingerprint):
            return []
        lines, _ = _read_lines(
            f,
            state.last_offset,
            state,
            lambda offset: state.advanced(offset, state.fingerprint),
        )
    return lines


def _drain_rotated(state: SourceState) -> List[RawLine]:
    renamed = find_renamed(state)
    if renamed is None:
        logger.warning(
            "%s was replaced and its previous file could not be found; "
            "lines appended to it after offset %d are lost",
            state.path,
            state.last_offset,
        )
        return []
    try:
        lines = read_renamed(state, renamed)
    except OSError as e:
        logger.warning("Could not drain rotated file %s: %s", renamed, e)
        return []
    if lines:
        logger.info("Drained %d line(s) from rotated file %s", len(lines), renamed)
    return lines


def read_delta(state: SourceState) -> Tuple[List[RawLine], SourceState]:
    """
    Return the lines appended since state.last_offset and the state to
    use next time.

    When the path now names a different file, the unread lines of the old
    one are taken from wherever it was renamed to, then the new file is
    read from the start. Only newline-terminated lines are consumed. A
    partial last line stays on disk for a later call.
    Raises OSError when the file cannot be opened or read.
    """
    with open(state.path, "rb") as f:
        # fstat on the open descriptor, so the identity we compare is
        # the identity of the bytes we are about to read
        current = _fingerprint_of(os.fstat(f.fileno()))

        drained: List[RawLine] = []
        if is_rotated(state, current):
            replaced = state.fingerprint is not None and not current.same_identity(state.fingerprint)
            if replaced:
                drained = _drain_rotated(state)
            logger.info(
                "Rotation detected on %s (inode %s -> %d, size %d, offset %d); "
                "reading from start",
                state.path,
                state.fingerprint.inode if state.fingerprint else "?",
                current.inode,
                current.size,
                state.last_offset,
            )
            state = state.reset()

        lines, end = _read_lines(
            f,
            state.last_offset,
            state,
            lambda offset: state.advanced(offset, current),
        )

    return drained + lines, state.advanced(end, current)


def read_delta_with_retry(
    state: SourceState, retry_delay: float = 0.5
) -> Tuple[List[RawLine], SourceState]:
    """
    read_delta with a single retry, to ride out the short window during
    rotation where the file is missing or not yet readable.
    """
    try:
        return read_delta(state)
    except OSError as first:
        logger.debug("Read of %s failed (%s), retrying in %.2fs", state.path, first, retry_delay)
        time.sleep(retry_delay)

    try:
        return read_delta(state)
    except OSError as e:
        raise SourceUnavailableError(state.path, e) from e
