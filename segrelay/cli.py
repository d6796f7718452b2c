"""Command line entry points: record a session or (de)crypt stored segments."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
import time
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Dict

from segrelay.config import get_cfg
from segrelay.crypto import CryptoError, CryptoTransform, decrypt_file, encrypt_file, load_key
from segrelay.pipeline import build_pipeline
from segrelay.recorder import RecordingState

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

log = logging.getLogger("segrelay.cli")


def configure_logging(cfg: Dict[str, Any], level: str | None = None) -> None:
    logging_cfg = cfg.get("logging") or {}
    if level is None:
        level = "DEBUG" if logging_cfg.get("dev_mode") else str(logging_cfg.get("level", "INFO"))
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="segrelay",
        description="Record in fixed-length segments and relay them to an upload endpoint",
    )
    parser.add_argument("--log-level", help="Override the configured log level (e.g. DEBUG)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    record = subparsers.add_parser("record", help="Record until interrupted or --duration elapses")
    record.add_argument("--mode", choices=("audio", "screen"), help="Capture mode (default from config)")
    record.add_argument("--duration", type=float, help="Stop after this many seconds")

    for name, verb in (("encrypt", "Encrypt"), ("decrypt", "Decrypt")):
        sub = subparsers.add_parser(name, help=f"{verb} a segment file with the configured key")
        sub.add_argument("source", type=Path)
        sub.add_argument("-o", "--output", type=Path, help="Destination path")
    return parser


def _transform_from_cfg(cfg: Dict[str, Any]) -> CryptoTransform:
    raw = (cfg.get("crypto") or {}).get("key") or ""
    if not raw:
        raise ValueError("crypto.key (or ENCRYPTION_KEY) is not configured")
    return CryptoTransform(load_key(raw))


def _run_record(cfg: Dict[str, Any], mode: str | None, duration: float | None) -> int:
    pipeline = build_pipeline(cfg)
    stop_event = threading.Event()

    def _handle_signal(signum, _frame):
        log.info("received signal %s; stopping", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    pipeline.start()
    if not pipeline.record(mode):
        pipeline.shutdown(0)
        return 1

    deadline = None if duration is None else time.monotonic() + duration
    while not stop_event.wait(0.5):
        if pipeline.recorder.state is RecordingState.STOPPED:
            log.warning("capture ended on its own")
            break
        if deadline is not None and time.monotonic() >= deadline:
            break

    drained = pipeline.shutdown()
    stats = pipeline.queue.stats()
    log.info(
        "session finished: %d delivered, %d dropped, %d dead-lettered, %d pending",
        stats["delivered"],
        stats["dropped"],
        stats["dead_lettered"],
        stats["pending"],
    )
    return 0 if drained else 2


def main(argv: Iterable[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else sys.argv[1:])
    cfg = get_cfg()
    configure_logging(cfg, args.log_level)

    if args.command == "record":
        return _run_record(cfg, args.mode, args.duration)

    if args.command in {"encrypt", "decrypt"}:
        try:
            transform = _transform_from_cfg(cfg)
            if args.command == "encrypt":
                out = encrypt_file(transform, args.source, args.output)
            else:
                out = decrypt_file(transform, args.source, args.output)
        except (ValueError, CryptoError, OSError) as exc:
            log.error("%s failed: %s", args.command, exc)
            return 1
        print(out)
        return 0

    parser.error("no command specified")
    return 1


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
