#!/usr/bin/env python3
"""
KV-Cache Client Command Line

Usage:
    kv-cache-client --nodes a:127.0.0.1:4444,b:127.0.0.1:4445 set mykey myvalue
    kv-cache-client get mykey                 # nodes from KV_CACHE_NODES
    kv-cache-client set tempkey tempval --expire 60
    kv-cache-client locate mykey              # owning node, no network
    kv-cache-client stats a
    kv-cache-client index a                   # keys and value sizes on node a
    kv-cache-client migrate a:10.0.0.1:4444,b:10.0.0.2:4444,c:10.0.0.3:4444
    kv-cache-client --debug exists mykey

Exit status:
    0 - success
    1 - key not found / node refused the operation
    2 - configuration, connection or protocol error

Environment Variables:
    KV_CACHE_NODES      - Node descriptor used when --nodes is omitted
    KV_CACHE_REPLICAS   - Ring points per node
    KV_CACHE_DEBUG      - Enable debug logging (true/false)
"""

import argparse
import logging
import sys
from typing import List, Optional

from .client import CacheClient
from .config.settings import settings
from .errors import CacheError

EXIT_OK = 0
EXIT_MISS = 1
EXIT_ERROR = 2

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="kv-cache-client",
        description="KV-Cache: client for a sharded key-value cache cluster",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--nodes",
        type=str,
        default=settings.NODES,
        help="Node descriptor label:address:port[,label:address:port...]",
    )

    parser.add_argument(
        "--replicas",
        type=int,
        default=settings.REPLICAS_PER_NODE,
        help="Ring points per node",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        default=settings.DEBUG,
        help="Enable debug logging",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    for name in ("get", "delete", "evict", "exists", "locate"):
        cmd = commands.add_parser(name, help=f"{name.upper()} a key")
        cmd.add_argument("key")

    for name in ("set", "add"):
        cmd = commands.add_parser(name, help=f"{name.upper()} a key")
        cmd.add_argument("key")
        cmd.add_argument("value")
        cmd.add_argument("--expire", type=int, default=0, help="Expiry in seconds (0 = never)")

    touch = commands.add_parser("touch", help="Refresh a key's expiry")
    touch.add_argument("key")
    touch.add_argument("--expire", type=int, default=0, help="Expiry in seconds (0 = never)")

    for name in ("stats", "check"):
        cmd = commands.add_parser(name, help=f"{name.upper()} a node")
        cmd.add_argument("label")

    index = commands.add_parser("index", help="List the keys stored on a node")
    index.add_argument("label")

    migrate = commands.add_parser("migrate", help="Start migrating every node to a new topology")
    migrate.add_argument("target", help="Descriptor of the target cluster")

    commands.add_parser("abort-migration", help="Abort a running migration on every node")

    return parser.parse_args(argv)


def setup_logging(debug: bool = False) -> None:
    """Configure logging based on debug flag."""
    level = logging.DEBUG if debug else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stderr),
        ]
    )


def run_command(client: CacheClient, args: argparse.Namespace) -> int:
    """Run one parsed command and print its result."""
    command = args.command

    if command == "locate":
        node = client.select_node(args.key)
        print(node)
        return EXIT_OK

    if command == "get":
        value = client.get(args.key)
        if value is None:
            print("(not found)")
            return EXIT_MISS
        sys.stdout.write(value.decode('utf-8', errors='replace') + "\n")
        return EXIT_OK

    if command == "exists":
        found = client.exists(args.key)
        print("1" if found else "0")
        return EXIT_OK if found else EXIT_MISS

    if command == "stats":
        for name, value in client.stats(args.label).items():
            print(f"{name}: {value}")
        return EXIT_OK

    if command == "index":
        for key, size in client.index(args.label).items():
            print(f"{key.decode('utf-8', errors='replace')} {size}")
        return EXIT_OK

    if command in ("set", "add"):
        operation = client.set if command == "set" else client.add
        ok = operation(args.key, args.value.encode('utf-8'), args.expire)
    elif command == "touch":
        ok = client.touch(args.key, args.expire)
    elif command == "delete":
        ok = client.delete(args.key)
    elif command == "evict":
        ok = client.evict(args.key)
    elif command == "migrate":
        ok = client.migration_begin(args.target)
    elif command == "abort-migration":
        ok = client.migration_abort()
    else:
        ok = client.check(args.label)

    print("OK" if ok else "FAILED")
    return EXIT_OK if ok else EXIT_MISS


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the client."""
    args = parse_args(argv)
    setup_logging(debug=args.debug)

    try:
        with CacheClient(args.nodes, replicas=args.replicas) as client:
            return run_command(client, args)
    except CacheError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"ERROR {e}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
