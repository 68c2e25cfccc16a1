"""CLI entrypoint for the bridge.

The WhatsApp session is provided by the host as a factory: `--source
package.module:factory` names a callable (sync or async) returning a
`SourceClient`. Everything else comes from `WABRIDGE_*` settings, with the
flags below overriding them.
"""

from __future__ import annotations

import argparse
import importlib
import inspect
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import anyio
import logfire
from rich import print

from .config import BridgeConfig
from .engine.bridge import start_bridge
from .runner import run_bridge
from .source.protocol import SourceClient


def _parse_cli_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="wabridge",
        description="Mirror WhatsApp conversations onto Telegram forum topics.",
    )
    parser.add_argument(
        "--source",
        required=True,
        help="Import path of the WhatsApp session factory, as 'module:callable'.",
    )
    parser.add_argument(
        "--database-path",
        default="",
        help="JSON document holding the bridge mappings (default: WABRIDGE_DATABASE_PATH).",
    )
    parser.add_argument(
        "--temp-dir",
        default="",
        help="Scratch directory for media transfers (default: WABRIDGE_TEMP_DIR).",
    )
    parser.add_argument(
        "--timeout-seconds",
        type=int,
        default=0,
        help="Telegram getUpdates long-poll timeout seconds (default: WABRIDGE_POLL_TIMEOUT_SECONDS).",
    )
    parser.add_argument(
        "--no-announce",
        action="store_true",
        help="Do not post the start banner or register bot commands.",
    )
    return parser.parse_args(argv)


def load_source_factory(path: str) -> Callable[[], Any]:
    """Resolve `module:callable` into the factory object."""

    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"--source must look like 'module:callable'; got {path!r}")
    module = importlib.import_module(module_name)
    target: Any = module
    for part in attr.split("."):
        target = getattr(target, part)
    if not callable(target):
        raise ValueError(f"{path!r} is not callable")
    return target


async def build_source(factory: Callable[[], Any]) -> SourceClient:
    source = factory()
    if inspect.isawaitable(source):
        source = await source
    if not isinstance(source, SourceClient):
        raise TypeError(f"Source factory returned {type(source).__name__}, not a SourceClient")
    return source


async def run(
    *,
    source: str,
    database_path: str = "",
    temp_dir: str = "",
    timeout_seconds: int = 0,
    announce: bool = True,
) -> int:
    """Function entrypoint. Returns the process exit code."""

    logfire.configure()
    logging.basicConfig(level=logging.INFO, handlers=[logfire.LogfireLoggingHandler()])

    overrides: dict[str, Any] = {}
    if database_path.strip():
        overrides["database_path"] = Path(database_path.strip())
    if temp_dir.strip():
        overrides["temp_dir"] = Path(temp_dir.strip())
    if timeout_seconds > 0:
        overrides["poll_timeout_seconds"] = timeout_seconds
    config = BridgeConfig(**overrides)

    client = await build_source(load_source_factory(source))
    bridge = await start_bridge(config, client, announce=announce)
    if bridge is None:
        print("[red]Bridge not started[/red]: missing Telegram settings (see log).")
        return 1
    await run_bridge(bridge)
    return 0


async def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""
    args = _parse_cli_args(argv)
    return await run(
        source=args.source,
        database_path=args.database_path,
        temp_dir=args.temp_dir,
        timeout_seconds=args.timeout_seconds,
        announce=not args.no_announce,
    )


def cli() -> None:
    raise SystemExit(anyio.run(main))
