"""Command line entry point: ``python -m pyvalet serve|add-driver``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import aiohttp
from aiohttp import web

from pyvalet.allocator import Allocator
from pyvalet.config import ValetConfig
from pyvalet.exceptions import ValetError
from pyvalet.ledger import TokenLedger
from pyvalet.results import Err
from pyvalet.service import ValetService
from pyvalet.store import ResourceStore
from pyvalet.web import create_app


def _serve(config: ValetConfig) -> int:
    app = create_app(ValetService(config))
    web.run_app(app, host=config.host, port=config.port)
    return 0


async def _add_driver_remote(url: str, name: str, phone: str) -> int:
    endpoint = f"{url.rstrip('/')}/api/drivers"
    async with aiohttp.ClientSession() as session:
        async with session.post(endpoint, json={"name": name, "phone": phone}) as resp:
            body = await resp.json(content_type=None)
            if resp.status != 201:
                print(f"Could not add driver: {body}", file=sys.stderr)
                return 1
    print(f"Driver {body['name']} added with id {body['id']}")
    return 0


def _add_driver_local(config: ValetConfig, name: str, phone: str) -> int:
    if not config.store_path:
        print("add-driver needs --url or VALET_STORE_PATH", file=sys.stderr)
        return 2
    store = ResourceStore(path=config.store_path)
    store.initialize_slots(config.total_slots)
    allocator = Allocator(store, TokenLedger(store))
    outcome = allocator.register_driver(name, phone)
    if isinstance(outcome, Err):
        print(f"Could not add driver: {outcome.reason}", file=sys.stderr)
        return 1
    print(f"Driver {outcome.value.name} added with id {outcome.value.id}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="pyvalet", description="WhatsApp valet parking orchestration service.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the webhook and dashboard server")
    serve.add_argument("--host", help="Bind address (default: VALET_HOST or 0.0.0.0)")
    serve.add_argument("--port", type=int, help="Bind port (default: VALET_PORT or 4513)")
    serve.add_argument("--store", help="JSON snapshot file (default: VALET_STORE_PATH)")

    add = sub.add_parser("add-driver", help="Register a valet driver")
    add.add_argument("name")
    add.add_argument("phone")
    add.add_argument("--url", help="Base URL of a running server; registers through its admin API")
    add.add_argument("--store", help="JSON snapshot file (default: VALET_STORE_PATH)")

    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    overrides = {
        key: value
        for key, value in (
            ("host", getattr(args, "host", None)),
            ("port", getattr(args, "port", None)),
            ("store_path", args.store),
        )
        if value is not None
    }
    try:
        config = ValetConfig.from_env(**overrides)
        if args.command == "serve":
            return _serve(config)
        if args.url:
            return asyncio.run(_add_driver_remote(args.url, args.name, args.phone))
        return _add_driver_local(config, args.name, args.phone)
    except ValetError as exc:
        print(f"pyvalet: {exc}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"pyvalet: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
