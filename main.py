from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import BinaryIO, Optional

from debugbunny.config import load_config
from debugbunny.decode import read_records
from debugbunny.errors import DebugBunnyError
from debugbunny.lifecycle import DebugBunny

DEFAULT_CONFIG_PATH = "debugbunny.json"

logger = logging.getLogger("debugbunny")


def _open_sink(path: str) -> tuple[BinaryIO, bool]:
    if path == "-":
        return sys.stderr.buffer, False
    return open(path, "ab"), True


def run(config_path: str, output: str, grace: Optional[float], duration: Optional[float]) -> int:
    config = load_config(config_path)
    sink, owned = _open_sink(output)

    bunny = DebugBunny.from_config(config, sink, close_sink=owned)
    bunny.install_signal_handlers()
    bunny.start()
    logger.info("scraping %d target(s) into %s", len(config.targets), output)

    bunny.wait(timeout=duration)
    clean = bunny.stop(grace=grace)
    return 0 if clean else 1


def decode(path: str, target_id: Optional[str]) -> int:
    with open(path, "rb") as f:
        for record in read_records(f):
            if target_id is not None and record["target_id"] != target_id:
                continue
            for key in ("body", "stdout", "stderr"):
                if isinstance(record.get(key), bytes):
                    record[key] = record[key].decode("utf-8", errors="replace")
            print(json.dumps(record, ensure_ascii=False))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="debugbunny")
    parser.add_argument("--log-level", default="INFO", help="Diagnostic log level (DEBUG, INFO, WARNING, ...)")
    sub = parser.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run", help="Scrape the configured targets until SIGTERM/SIGINT")
    run_p.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to the JSON config")
    run_p.add_argument("--output", default="-", help="Log file to append to ('-' for stderr)")
    run_p.add_argument("--grace", type=float, default=None, help="Shutdown grace period in seconds")
    run_p.add_argument("--duration", type=float, default=None, help="Stop after this many seconds")

    decode_p = sub.add_parser("decode", help="Print the records of a log file with decompressed payloads")
    decode_p.add_argument("path", help="Log file written by 'run'")
    decode_p.add_argument("--target", default=None, help="Only show records of this target id")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(threadName)s] %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        if args.command == "run":
            return run(args.config, args.output, args.grace, args.duration)
        return decode(args.path, args.target)
    except (DebugBunnyError, OSError) as exc:
        logger.error("%s", exc)
        return 2


if __name__ == "__main__":
    sys.exit(main())
