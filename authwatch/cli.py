# authwatch/cli.py
import argparse
import logging
import os
import signal
import sys
from typing import List, Optional

from .alerts import AlertEmitter, JsonlFileSink, SQLiteSink, StreamSink
from .config import Settings, load_config
from .errors import AuthwatchError
from .watcher import Watcher

logger = logging.getLogger("authwatch")

USAGE = """\
authwatch - real-time authentication log monitor

  authwatch start [--config PATH]   begin monitoring the configured log sources
  authwatch stop  [--config PATH]   terminate a running monitor
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="authwatch", usage=USAGE, add_help=False)
    parser.add_argument("command", nargs="?")
    parser.add_argument("--config", help="Path to a YAML configuration file")
    return parser


def configure_logging(level: str) -> None:
    # alerts go to stdout, diagnostics to stderr
    logging.basicConfig(
        level=level.upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def build_emitter(settings: Settings) -> AlertEmitter:
    sinks = []
    if settings.alert_output == "-":
        sinks.append(StreamSink())
    else:
        sinks.append(JsonlFileSink(settings.alert_output))
    if settings.db_path:
        sinks.append(SQLiteSink(settings.db_path))
    return AlertEmitter(sinks)


def write_pid_file(path: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(f"{os.getpid()}\n")


def remove_pid_file(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def cmd_start(settings: Settings) -> int:
    emitter = build_emitter(settings)
    watcher = Watcher(settings.log_sources, emitter, retry_delay=settings.retry_delay)

    try:
        watcher.start()
    except AuthwatchError as e:
        print(f"authwatch: {e}", file=sys.stderr)
        emitter.close()
        return 1

    write_pid_file(settings.pid_file)
    signal.signal(signal.SIGTERM, lambda signum, frame: watcher.request_stop())
    logger.info("Monitoring started (pid %d)", os.getpid())

    try:
        watcher.run_forever()
    finally:
        remove_pid_file(settings.pid_file)
        emitter.close()
    return 0


def cmd_stop(settings: Settings) -> int:
    try:
        with open(settings.pid_file, "r", encoding="utf-8") as f:
            pid = int(f.read().strip())
    except (OSError, ValueError) as e:
        print(f"authwatch: no running monitor ({settings.pid_file}: {e})", file=sys.stderr)
        return 1

    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        print(f"authwatch: process {pid} is not running", file=sys.stderr)
        remove_pid_file(settings.pid_file)
        return 1
    except PermissionError as e:
        print(f"authwatch: cannot signal process {pid}: {e}", file=sys.stderr)
        return 1

    print("Stopping monitoring...")
    return 0


def run(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args, extra = parser.parse_known_args(argv)

    if extra or args.command not in ("start", "stop"):
        sys.stderr.write(USAGE)
        return 2

    try:
        settings = load_config(args.config)
    except AuthwatchError as e:
        print(f"authwatch: {e}", file=sys.stderr)
        return 1

    configure_logging(settings.log_level)

    if args.command == "start":
        return cmd_start(settings)
    return cmd_stop(settings)


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
