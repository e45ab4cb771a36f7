# tests/test_watcher.py
import io
import json
import os
import time

import pytest
from watchdog.events import FileCreatedEvent, FileModifiedEvent, FileMovedEvent

from authwatch.alerts import AlertEmitter, StreamSink
from authwatch.errors import SourceMissingError
from authwatch.log_ingestor import initial_state
from authwatch.models import SourceState
from authwatch.parsers import is_interesting, parse_line
from authwatch.watcher import SourceEventHandler, SourceWorker, Watcher, process_cycle


LINES = [
    "Mar  1 10:00:00 kali sshd[1]: Failed password for invalid user admin from 203.0.113.5 port 22 ssh2",
    "Mar  1 10:00:01 kali sshd[2]: Accepted password for alice from 10.0.0.2 port 22 ssh2",
    "Mar  1 10:00:02 kali sudo: pam_unix(sudo:auth): auth failed; user=bob",
    "Mar  1 10:00:03 kali sshd[3]: error: kex_exchange_identification: banner line contains invalid characters",
    "Mar  1 10:00:04 kali su: FAILED SU (to root) on tty1",
    "Mar  1 10:00:05 kali gdm-password]: gkr-pam: unable to locate daemon control file, error",
    "Mar  1 10:00:06 kali CRON[4]: pam_unix(cron:session): session opened for user root",
]


def append(path, lines):
    with open(path, "a", encoding="utf-8") as f:
        for line in lines:
            f.write(line + "\n")


def records(out):
    return [json.loads(line) for line in out.getvalue().splitlines()]


@pytest.fixture
def auth_log(tmp_path):
    path = tmp_path / "auth.log"
    path.write_text("Mar  1 09:59:59 kali sshd[0]: Failed password for root from 192.0.2.1\n", encoding="utf-8")
    return str(path)


@pytest.fixture
def out():
    return io.StringIO()


@pytest.fixture
def emitter(out):
    return AlertEmitter([StreamSink(out)])


def test_cycle_emits_one_alert_per_qualifying_line(auth_log, emitter, out):
    state = initial_state(auth_log)
    append(auth_log, LINES)

    state, alerts = process_cycle(state, emitter)

    interesting = [line for line in LINES if is_interesting(line)]
    ssh_without_ip = [
        line for line in interesting if "sshd" in line and parse_line(line) is None
    ]
    assert len(alerts) == len(interesting) - len(ssh_without_ip)
    assert [a.alert_type for a in alerts] == ["ssh", "privilege", "console", "gui"]
    assert [r["risk_level"] for r in records(out)] == ["high", "critical", "medium", "low"]
    assert records(out)[0]["target"] == "203.0.113.5"
    assert state.last_offset == os.path.getsize(auth_log)


def test_historical_lines_are_not_reported(auth_log, emitter):
    state = initial_state(auth_log)
    _, alerts = process_cycle(state, emitter)
    assert alerts == []


def test_cycles_preserve_order_across_batches(auth_log, emitter, out):
    state = initial_state(auth_log)
    append(auth_log, ["sshd[1]: Failed password for root from 10.0.0.1"])
    state, _ = process_cycle(state, emitter)
    append(auth_log, ["sshd[2]: Failed password for root from 10.0.0.2"])
    state, _ = process_cycle(state, emitter)
    state, _ = process_cycle(state, emitter)

    assert [r["target"] for r in records(out)] == ["10.0.0.1", "10.0.0.2"]


def test_rotation_between_cycles_is_not_skipped(auth_log, emitter, out):
    state = initial_state(auth_log)
    append(auth_log, ["filler " * 20])
    state, _ = process_cycle(state, emitter)

    with open(auth_log, "w", encoding="utf-8") as f:
        f.write("sudo: 3 incorrect password attempts; user=carol failed\n")

    state, alerts = process_cycle(state, emitter)
    assert [a.target for a in alerts] == ["carol"]


def test_unavailable_source_keeps_state(tmp_path, emitter):
    state = SourceState(path=str(tmp_path / "auth.log"), last_offset=10)
    next_state, alerts = process_cycle(state, emitter, retry_delay=0)
    assert next_state is state
    assert alerts == []


def test_worker_finishes_pending_notifications_before_stopping(auth_log, emitter, out):
    worker = SourceWorker(initial_state(auth_log), emitter, retry_delay=0)
    append(auth_log, ["su: FAILED SU (to root) on tty1"])
    worker.notify()
    worker.stop()

    worker.start()
    worker.join(5)

    assert not worker.is_alive()
    assert [r["alert_type"] for r in records(out)] == ["console"]
    assert worker.state.last_offset == os.path.getsize(auth_log)


def rotate(auth_log, rotated, old_lines, new_lines):
    append(auth_log, old_lines)
    os.rename(auth_log, rotated)
    append(auth_log, new_lines)


def test_moved_event_handled_before_new_file_is_read(tmp_path, auth_log, emitter, out):
    worker = SourceWorker(initial_state(auth_log), emitter, retry_delay=0)
    rotated = str(tmp_path / "auth.log.1")
    append(auth_log, ["sshd[5]: Failed password for root from 198.51.100.9"])
    os.rename(auth_log, rotated)

    alerts = worker.drain_rotated(rotated)
    assert [a.target for a in alerts] == ["198.51.100.9"]
    assert worker.state.path == auth_log

    append(auth_log, ["sshd[6]: Failed password for root from 198.51.100.10"])
    worker.run_cycle()
    worker.run_cycle()

    assert [r["target"] for r in records(out)] == ["198.51.100.9", "198.51.100.10"]


def test_rotation_seen_by_cycle_before_moved_event(tmp_path, auth_log, emitter, out):
    # queue order after a rename: modified, moved, created
    worker = SourceWorker(initial_state(auth_log), emitter, retry_delay=0)
    rotated = str(tmp_path / "auth.log.1")
    rotate(
        auth_log,
        rotated,
        ["sshd[1]: Failed password for root from 10.0.0.1"],
        ["sshd[2]: Failed password for root from 10.0.0.2"],
    )

    worker.run_cycle()
    worker.drain_rotated(rotated)
    worker.run_cycle()

    assert [r["target"] for r in records(out)] == ["10.0.0.1", "10.0.0.2"]
    assert worker.state.fingerprint.inode == os.stat(auth_log).st_ino


def test_rotation_through_worker_queue(tmp_path, auth_log, emitter, out):
    worker = SourceWorker(initial_state(auth_log), emitter, retry_delay=0)
    rotated = str(tmp_path / "auth.log.1")
    rotate(
        auth_log,
        rotated,
        ["su: FAILED SU (to root) on tty1", "sshd[1]: Failed password for root from 10.0.0.1"],
        ["sshd[2]: Failed password for root from 10.0.0.2"],
    )

    worker.notify()
    worker.notify_moved(rotated)
    worker.notify()
    worker.stop()
    worker.start()
    worker.join(5)

    assert [r["target"] for r in records(out)] == ["unknown", "10.0.0.1", "10.0.0.2"]


class FailingSink:
    """Records targets, raising on the given write (1-based)."""

    def __init__(self, fail_on):
        self.fail_on = fail_on
        self.calls = 0
        self.targets = []

    def write(self, alert):
        self.calls += 1
        if self.calls == self.fail_on:
            raise OSError("disk full")
        self.targets.append(alert.target)

    def close(self):
        pass


def test_failed_write_resumes_at_failed_line(auth_log):
    sink = FailingSink(fail_on=2)
    worker = SourceWorker(initial_state(auth_log), AlertEmitter([sink]), retry_delay=0)
    append(auth_log, [
        "sshd[1]: Failed password for root from 10.0.0.1",
        "sshd[2]: Failed password for root from 10.0.0.2",
        "sshd[3]: Failed password for root from 10.0.0.3",
    ])

    with pytest.raises(OSError):
        worker.run_cycle()
    worker.run_cycle()
    worker.run_cycle()

    assert sink.targets == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
    assert worker.state.last_offset == os.path.getsize(auth_log)


def test_failed_write_while_draining_rotated_file(tmp_path, auth_log):
    sink = FailingSink(fail_on=2)
    worker = SourceWorker(initial_state(auth_log), AlertEmitter([sink]), retry_delay=0)
    rotated = str(tmp_path / "auth.log.1")
    rotate(
        auth_log,
        rotated,
        [
            "sshd[1]: Failed password for root from 10.0.0.1",
            "sshd[2]: Failed password for root from 10.0.0.2",
        ],
        ["sshd[3]: Failed password for root from 10.0.0.3"],
    )

    with pytest.raises(OSError):
        worker.run_cycle()
    worker.run_cycle()
    worker.drain_rotated(rotated)
    worker.run_cycle()

    assert sink.targets == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]


class RecordingWorker:
    def __init__(self):
        self.calls = []

    def notify(self):
        self.calls.append("notify")

    def notify_moved(self, dest_path):
        self.calls.append(("moved", dest_path))


def test_handler_routes_events_for_watched_paths(tmp_path):
    watched = str(tmp_path / "auth.log")
    worker = RecordingWorker()
    handler = SourceEventHandler({watched: worker})

    handler.dispatch(FileModifiedEvent(watched))
    handler.dispatch(FileModifiedEvent(str(tmp_path / "syslog")))
    handler.dispatch(FileCreatedEvent(watched))
    handler.dispatch(FileMovedEvent(watched, str(tmp_path / "auth.log.1")))
    handler.dispatch(FileMovedEvent(str(tmp_path / "auth.log.tmp"), watched))

    assert worker.calls == [
        "notify",
        "notify",
        ("moved", str(tmp_path / "auth.log.1")),
        "notify",
    ]


def test_watcher_missing_source_is_fatal(tmp_path, emitter):
    watcher = Watcher([str(tmp_path / "missing.log")], emitter)
    with pytest.raises(SourceMissingError):
        watcher.start()


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


def test_watcher_emits_alerts_for_appended_lines(auth_log, emitter, out):
    with Watcher([auth_log], emitter, retry_delay=0.05) as watcher:
        append(auth_log, [LINES[0], LINES[1], LINES[4]])
        assert wait_for(lambda: len(records(out)) >= 2)

    assert [r["alert_type"] for r in records(out)] == ["ssh", "console"]
    assert watcher.states()[os.path.abspath(auth_log)].last_offset == os.path.getsize(auth_log)


def test_request_stop_ends_run_forever(auth_log, emitter, out):
    watcher = Watcher([auth_log], emitter, retry_delay=0.05)
    watcher.start()
    append(auth_log, ["sshd[1]: Failed password for root from 10.0.0.1"])
    assert wait_for(lambda: len(records(out)) == 1)

    watcher.request_stop()
    watcher.run_forever(check_interval=0.01)

    assert all(not worker.is_alive() for worker in watcher.workers.values())
    # a second stop is a no-op
    watcher.stop()
