"""CLI entry point for cubesat."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from .config import Config, load_config
from .errors import CubeError
from .network import LocalNetwork
from .replicated import ReplicatedStore


class JSONFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        line = {
            "time": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            line["exc"] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


def setup_logging(level: int, json_output: bool = False) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(
        JSONFormatter() if json_output else logging.Formatter("%(levelname)s %(name)s: %(message)s")
    )
    logging.basicConfig(level=level, handlers=[handler])


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _read_json(source: str) -> Any:
    """Read JSON from a file path, or stdin for "-"."""
    if source == "-":
        return json.load(sys.stdin)
    with open(source) as f:
        return json.load(f)


def _open(args: argparse.Namespace, config: Config) -> ReplicatedStore:
    return ReplicatedStore(args.name, config)


async def cmd_put(args: argparse.Namespace) -> int:
    """Write documents that carry their own _id."""
    store = _open(args, load_config(args.config))
    try:
        _print(await store.put(_read_json(args.file)))
    finally:
        await store.close()
    return 0


async def cmd_post(args: argparse.Namespace) -> int:
    """Write documents, assigning ids."""
    store = _open(args, load_config(args.config))
    try:
        _print(await store.post(_read_json(args.file)))
    finally:
        await store.close()
    return 0


async def cmd_get(args: argparse.Namespace) -> int:
    store = _open(args, load_config(args.config))
    try:
        _print(await store.get(args.id, rev=args.rev))
    finally:
        await store.close()
    return 0


async def cmd_all(args: argparse.Namespace) -> int:
    store = _open(args, load_config(args.config))
    try:
        _print(await store.all())
    finally:
        await store.close()
    return 0


async def cmd_delete(args: argparse.Namespace) -> int:
    store = _open(args, load_config(args.config))
    try:
        _print(await store.delete({"_id": args.id, "_rev": args.rev}))
    finally:
        await store.close()
    return 0


async def cmd_find(args: argparse.Namespace) -> int:
    """Run a Mango selector given as JSON."""
    store = _open(args, load_config(args.config))
    try:
        _print(await store.find({"selector": json.loads(args.selector)}))
    finally:
        await store.close()
    return 0


async def cmd_join(args: argparse.Namespace) -> int:
    """Merge another local store into this one."""
    config = load_config(args.config)
    store = _open(args, config)
    other = ReplicatedStore(args.other, config, network=store.network)
    try:
        result = await store.join(other)
        _print(vars(result))
    finally:
        await other.close()
        await store.close()
    return 0


async def cmd_snapshot(args: argparse.Namespace) -> int:
    """Publish the store's log and print its address."""
    store = _open(args, load_config(args.config))
    try:
        fingerprint = await store.to_fingerprint()
        _print({"name": store.name, "fingerprint": fingerprint})
    finally:
        await store.close()
    return 0


async def cmd_load(args: argparse.Namespace) -> int:
    """Bootstrap a store from a published fingerprint."""
    config = load_config(args.config)
    store = ReplicatedStore(
        {"fingerprint": args.fingerprint, "name": args.name_as or args.fingerprint},
        config,
    )
    try:
        result = await store.load()
        _print({"name": store.name, **vars(result)})
    finally:
        await store.close()
    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    store = _open(args, load_config(args.config))
    try:
        _print(store.get_stats())
    finally:
        await store.close()
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Serve the local block store over HTTP."""
    config = load_config(args.config)

    try:
        import uvicorn

        from .server import create_app
    except ImportError as e:
        print(f"Server dependencies not installed: {e}", file=sys.stderr)
        print("Install with: pip install cubesat[server]", file=sys.stderr)
        return 1

    if config.store.in_memory:
        network = LocalNetwork(":memory:")
    else:
        network = LocalNetwork(Path(config.store.data_dir).expanduser() / config.network.blocks_db)

    host = args.host or config.server.host
    port = args.port or config.server.port
    print(f"Serving blocks on http://{host}:{port}")
    uvicorn.run(create_app(network), host=host, port=port)
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="cubesat",
        description="A replicated document store synchronized through a content-addressed log",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: none)",
    )
    parser.add_argument(
        "-n", "--name",
        type=str,
        default="default",
        help="Logical store name (default: default)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Log at info, or at debug when given twice",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    put_parser = subparsers.add_parser("put", help="Write documents with their own _id")
    put_parser.add_argument("file", nargs="?", default="-", help="JSON file (default: stdin)")
    put_parser.set_defaults(func=cmd_put)

    post_parser = subparsers.add_parser("post", help="Write documents, assigning ids")
    post_parser.add_argument("file", nargs="?", default="-", help="JSON file (default: stdin)")
    post_parser.set_defaults(func=cmd_post)

    get_parser = subparsers.add_parser("get", help="Fetch a document")
    get_parser.add_argument("id")
    get_parser.add_argument("--rev", default=None, help="Specific revision")
    get_parser.set_defaults(func=cmd_get)

    all_parser = subparsers.add_parser("all", help="List live documents")
    all_parser.set_defaults(func=cmd_all)

    delete_parser = subparsers.add_parser("delete", help="Delete a document")
    delete_parser.add_argument("id")
    delete_parser.add_argument("rev")
    delete_parser.set_defaults(func=cmd_delete)

    find_parser = subparsers.add_parser("find", help="Query with a Mango selector")
    find_parser.add_argument("selector", help='Selector JSON, e.g. \'{"team": "Mushroom"}\'')
    find_parser.set_defaults(func=cmd_find)

    join_parser = subparsers.add_parser("join", help="Merge another local store into this one")
    join_parser.add_argument("other", help="Name of the store to merge from")
    join_parser.set_defaults(func=cmd_join)

    snapshot_parser = subparsers.add_parser("snapshot", help="Publish the log and print its fingerprint")
    snapshot_parser.set_defaults(func=cmd_snapshot)

    load_parser = subparsers.add_parser("load", help="Bootstrap a store from a fingerprint")
    load_parser.add_argument("fingerprint")
    load_parser.add_argument("--as", dest="name_as", default=None, help="Name for the new store")
    load_parser.set_defaults(func=cmd_load)

    status_parser = subparsers.add_parser("status", help="Show log and store statistics")
    status_parser.set_defaults(func=cmd_status)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP block server")
    serve_parser.add_argument("--host", type=str, default=None, help="Host to bind")
    serve_parser.add_argument("-p", "--port", type=int, default=None, help="Port to bind")
    serve_parser.set_defaults(func=cmd_serve)

    args = parser.parse_args()

    levels = [logging.WARNING, logging.INFO, logging.DEBUG]
    setup_logging(levels[min(args.verbose, 2)], args.json)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    try:
        if asyncio.iscoroutinefunction(func):
            return asyncio.run(func(args))
        return func(args)
    except CubeError as e:
        print(f"Error ({e.kind}): {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
