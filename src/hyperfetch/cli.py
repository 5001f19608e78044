"""Command line entry point: send one request or print its dump."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from hyperfetch.adapter import HttpxAdapter
from hyperfetch.client import Client
from hyperfetch.command import Command
from hyperfetch.errors import CLIError, HyperFetchError
from hyperfetch.settings import Settings

logger = logging.getLogger(__name__)


def _parse_pairs(values: list[str] | None, *, flag: str) -> dict[str, str]:
    pairs: dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise CLIError(f"{flag} expects KEY=VALUE, got: {item}")
        pairs[key.strip()] = value
    return pairs


def _load_settings(args: argparse.Namespace) -> Settings:
    if args.config:
        return Settings.from_toml(args.config)
    return Settings()


def _build_adapter(settings: Settings) -> HttpxAdapter:
    return HttpxAdapter(timeout_s=settings.http_timeout_s)


def _build_command(client: Client, args: argparse.Namespace) -> Command:
    policy: dict[str, Any] = {"method": args.method.upper()}
    if args.retry is not None:
        policy["retry"] = args.retry
    if args.retry_time is not None:
        policy["retry_time"] = args.retry_time
    if args.timeout is not None:
        policy["timeout"] = args.timeout
    command = client.create_request(args.endpoint, **policy)

    params = _parse_pairs(args.param, flag="--param")
    if params:
        command = command.set_params(params)
    query = _parse_pairs(args.query, flag="--query")
    if query:
        command = command.set_query_params(query)
    headers = _parse_pairs(args.header, flag="--header")
    if headers:
        command = command.set_headers(headers)
    if args.data:
        try:
            command = command.set_data(json.loads(args.data))
        except json.JSONDecodeError as exc:
            raise CLIError(f"--data is not valid JSON: {exc}") from exc
    if command.missing_params():
        raise CLIError(f"missing --param for: {', '.join(command.missing_params())}")
    return command


async def _send(args: argparse.Namespace, settings: Settings) -> int:
    async with _build_adapter(settings) as adapter:
        async with Client(args.base_url, adapter=adapter, settings=settings) as client:
            command = _build_command(client, args)
            response = await command.send(queue_type=args.queue)
    print(json.dumps(response.as_dict(), sort_keys=True, indent=2, default=str))
    if not response.is_success:
        logger.info("request failed: %s", response.error)
        return 1
    return 0


def _cmd_send(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    return asyncio.run(_send(args, settings))


def _cmd_dump(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    client = Client(args.base_url, settings=settings)
    command = _build_command(client, args)
    print(json.dumps(command.dump(), sort_keys=True, indent=2, default=str))
    return 0


def _add_request_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("base_url", help="Client base URL, e.g. https://api.example.com")
    parser.add_argument("endpoint", help="Endpoint template, e.g. /users/:id")
    parser.add_argument("--method", default="GET")
    parser.add_argument("--param", action="append", help="Path param KEY=VALUE (repeatable).")
    parser.add_argument("--query", action="append", help="Query param KEY=VALUE (repeatable).")
    parser.add_argument("--header", action="append", help="Header KEY=VALUE (repeatable).")
    parser.add_argument("--data", default="", help="JSON request payload.")
    parser.add_argument("--retry", type=int, default=None, help="Retries after the first attempt.")
    parser.add_argument("--retry-time", type=int, default=None, help="Retry delay in ms.")
    parser.add_argument("--timeout", type=int, default=None, help="Request timeout in ms.")
    parser.add_argument(
        "--queue",
        choices=("auto", "fetch", "submit"),
        default="auto",
        help="Dispatcher to use (default: by method).",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hyperfetch")
    parser.add_argument("--config", default="", help="Path to a TOML file with [hyperfetch].")
    parser.add_argument("--log-level", default="", help="Override the configured log level.")
    subparsers = parser.add_subparsers(dest="command")

    send = subparsers.add_parser("send", help="Send one request and print the settled result.")
    _add_request_args(send)
    send.set_defaults(func=_cmd_send)

    dump = subparsers.add_parser("dump", help="Print the command dump without sending.")
    _add_request_args(dump)
    dump.set_defaults(func=_cmd_dump)
    return parser


def _configure_logging(args: argparse.Namespace) -> None:
    level = args.log_level or _load_settings(args).log_level
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: list[str] | None = None) -> int:
    """Run the CLI."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    func = getattr(args, "func", None)
    if func is None:
        parser.print_help()
        return 0
    try:
        _configure_logging(args)
        return int(func(args))
    except (HyperFetchError, ValueError) as exc:
        print(str(exc), file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
