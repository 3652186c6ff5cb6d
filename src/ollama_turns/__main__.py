"""CLI entrypoint for ollamaturns."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from importlib import metadata
from pathlib import Path

from .app import OllamaTurnsApp
from .cli import ChatRepl
from .config import ensure_config_dir, load_config


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ollamaturns",
        description="ollamaturns - branching terminal chat for local Ollama models",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to an alternative config.toml",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """Handle CLI flags, load configuration, and run the REPL."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("ollama-turns")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"ollamaturns {version}")
        return

    if args.config is None:
        ensure_config_dir()
    app = OllamaTurnsApp(load_config(args.config))
    try:
        asyncio.run(ChatRepl(app).run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
