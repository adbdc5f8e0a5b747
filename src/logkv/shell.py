#!/usr/bin/env python3
"""
Interactive shell for the logkv store.

A thin command loop over ``Engine.put``, ``Engine.get`` and
``Engine.compact``. Storage errors are printed and the loop keeps going.
"""

import argparse
import cmd
import logging
import sys

from pydantic import ValidationError

from .config import EngineConfig
from .storage.engine import Engine
from .storage.errors import StorageError

logger = logging.getLogger(__name__)


class KVShell(cmd.Cmd):
    """Interactive shell for the key-value store."""

    intro = (
        "=== logkv: log-structured key-value store ===\n"
        "Commands:\n"
        "  PUT <key> <value>\n"
        "  GET <key>\n"
        "  COMPACT\n"
        "  STATS\n"
        "  EXIT\n"
    )
    prompt = "> "

    def __init__(self, engine: Engine, stdin=None, stdout=None):
        super().__init__(stdin=stdin, stdout=stdout)
        self.engine = engine
        if stdin is not None:
            self.use_rawinput = False

    def _print(self, text: str = ""):
        self.stdout.write(f"{text}\n")

    def precmd(self, line):
        # Commands are case-insensitive; arguments are not
        parts = line.strip().split(maxsplit=1)
        if not parts:
            return ""
        parts[0] = parts[0].lower()
        return " ".join(parts)

    def onecmd(self, line):
        try:
            return super().onecmd(line)
        except StorageError as e:
            self._print(f"I/O error: {e}")
            return False

    def emptyline(self):
        # Do not repeat the last command on a blank line
        return False

    def default(self, line):
        self._print(f"Unknown command: {line.split()[0].upper()}")
        return False

    def do_put(self, arg):
        """
        Write a value for a key.
        Usage: PUT <key> <value>
        """
        args = arg.split(maxsplit=1)
        if len(args) != 2:
            self._print("Usage: PUT <key> <value>")
            return
        key, value = args
        self.engine.put(key, value)
        self._print("OK")

    def do_get(self, arg):
        """
        Read the current value of a key.
        Usage: GET <key>
        """
        args = arg.split()
        if not args:
            self._print("Usage: GET <key>")
            return
        key = args[0]
        value = self.engine.get(key)
        self._print("(null)" if value is None else value)

    def do_compact(self, arg):
        """
        Rewrite live values into a single segment and drop the old ones.
        Usage: COMPACT
        """
        self.engine.compact()
        self._print("Compaction completed.")

    def do_stats(self, arg):
        """
        Show segment and key counts.
        Usage: STATS
        """
        info = self.engine.get_segment_info()
        self._print(f"Keys: {info['keys']}  Segments: {info['total_segments']}")
        for segment in info["segments"]:
            self._print(
                f"  {segment['path']}  {segment['size_bytes']} bytes  "
                f"[{segment['status']}]"
            )

    def do_exit(self, arg):
        """
        Leave the shell.
        Usage: EXIT
        """
        self._print("Shutting down.")
        return True

    def do_quit(self, arg):
        """
        Leave the shell (alias for EXIT).
        Usage: QUIT
        """
        return self.do_exit(arg)

    def do_eof(self, arg):
        """Leave the shell on end of input."""
        self._print()
        return True


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="logkv",
        description="Interactive shell for a log-structured key-value store",
    )
    parser.add_argument(
        "--data-dir",
        help="Directory holding segment files (env: LOGKV_DATA_DIR, default: data)",
    )
    parser.add_argument(
        "--max-segment-size",
        type=int,
        help="Segment rollover threshold in bytes (env: LOGKV_MAX_SEGMENT_SIZE)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: WARNING)",
    )
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = EngineConfig.from_env()
        overrides = {}
        if args.data_dir is not None:
            overrides["data_dir"] = args.data_dir
        if args.max_segment_size is not None:
            overrides["max_segment_size"] = args.max_segment_size
        if overrides:
            config = EngineConfig(**{**config.model_dump(), **overrides})
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        return 2

    try:
        engine = Engine.from_config(config)
    except StorageError as e:
        logger.error("Failed to open store in %s: %s", config.data_dir, e)
        return 1

    logger.info("Opened %r", engine)
    with engine:
        try:
            KVShell(engine).cmdloop()
        except KeyboardInterrupt:
            print()
    return 0


if __name__ == "__main__":
    sys.exit(main())
