"""CLI entry point for the session client.

Usage:
    octools watch
    octools watch --session ses_123
    octools --base-url http://localhost:4096 --password secret sync ses_123
    octools --config octools.yaml -v watch
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace

from octools.adapters.events import Signal, signal_to_dict

from .client import OctoolsClient
from .config import ClientConfig
from .errors import OctoolsError
from .yaml_config import load_yaml_config

logger = logging.getLogger(__name__)


def _print_signal(signal: Signal) -> None:
    line = {"event": signal.event_type, **signal_to_dict(signal)}
    print(json.dumps(line, default=str), flush=True)


def build_config(args: argparse.Namespace) -> ClientConfig:
    config = load_yaml_config(args.config) if args.config else ClientConfig.from_env()
    overrides = {}
    if args.base_url is not None:
        overrides["base_url"] = args.base_url
    if args.password is not None:
        overrides["password"] = args.password
    if args.verbose:
        overrides["log_level"] = "DEBUG"
    return replace(config, **overrides) if overrides else config


async def _watch(config: ClientConfig, session_id: str | None) -> None:
    async with OctoolsClient(config) as client:
        def forward(signal: Signal) -> None:
            if session_id is None or signal.session_id in (None, session_id):
                _print_signal(signal)

        client.on("*", forward)
        await client.connect()
        if session_id is not None:
            await client.sync_session(session_id)
        async for signal in client.stream():
            if signal.event_type == "disconnected":
                break


async def _sync(config: ClientConfig, session_id: str) -> None:
    async with OctoolsClient(config) as client:
        client.on("*", _print_signal)
        summary = await client.sync_session(session_id)
        logger.info(
            "Rehydrated %d of %d messages and %d of %d diffs",
            summary.rehydrated_messages, summary.total_messages,
            summary.rehydrated_diffs, summary.total_diffs,
        )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="octools",
        description="Watch and rehydrate remote agent sessions",
    )
    parser.add_argument(
        "--base-url",
        default=None,
        help="Service base URL (default: OCTOOLS_BASE_URL or http://localhost:4096)",
    )
    parser.add_argument(
        "--password",
        default=None,
        help="Service password (default: OCTOOLS_PASSWORD)",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file layered over environment settings",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    watch = sub.add_parser("watch", help="Print every signal as a JSON line")
    watch.add_argument(
        "--session", "-s",
        default=None,
        help="Only show signals for this session (its history is replayed first)",
    )

    sync = sub.add_parser("sync", help="Replay a session's recent history")
    sync.add_argument("session_id", help="Session to rehydrate")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    try:
        config = build_config(args)
        logging.getLogger().setLevel(config.log_level.upper())
        if args.command == "watch":
            asyncio.run(_watch(config, args.session))
        else:
            asyncio.run(_sync(config, args.session_id))
    except OctoolsError as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
