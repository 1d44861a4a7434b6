#!/usr/bin/env python3
"""Local sandbox client entry point.

Usage:
  python sandbox_client_main.py --token TOKEN --name "My Laptop"
  python sandbox_client_main.py --token TOKEN --name "Kali" --image kalilinux/kali-rolling
  python sandbox_client_main.py --token TOKEN --name "Work PC" --dangerous
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import socket
import sys

from local_sandbox.agent import ClientConfig, ClientConnectError, LocalSandboxClient
from local_sandbox.backend import BackendClient
from local_sandbox.runner import ProvisioningError
from utils.constants import DEFAULT_IMAGE

DEFAULT_BACKEND_URL = os.getenv("SANDBOX_BACKEND_URL", "http://127.0.0.1:8787")


def parse_cli_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Local sandbox client: runs assistant commands in Docker or on this host",
        epilog=(
            "In Docker mode, commands run in an isolated container with --network host. "
            "In DANGEROUS mode, commands run directly on your OS without isolation."
        ),
    )
    parser.add_argument("--token", default="", help="Authentication token from Settings (required)")
    parser.add_argument("--name", default=None, help="Connection name (default: hostname)")
    parser.add_argument(
        "--image",
        default=DEFAULT_IMAGE,
        help=f"Docker image to use (default: {DEFAULT_IMAGE})",
    )
    parser.add_argument(
        "--dangerous",
        action="store_true",
        help="Run commands directly on host OS (no Docker)",
    )
    parser.add_argument(
        "--convex-url",
        dest="convex_url",
        default=DEFAULT_BACKEND_URL,
        help="Override backend URL (for development)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def build_client(args) -> LocalSandboxClient:
    config = ClientConfig(
        token=args.token.strip(),
        name=args.name or socket.gethostname(),
        backend_url=args.convex_url,
        image=args.image,
        dangerous=bool(args.dangerous),
    )
    return LocalSandboxClient(config, BackendClient(config.backend_url))


async def main(argv=None) -> int:
    args = parse_cli_args(argv)
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    if not args.token.strip():
        logger.error("❌ No authentication token provided")
        logger.error("Usage: sandbox_client_main.py --token YOUR_TOKEN")
        return 1

    client = build_client(args)
    stop_event = asyncio.Event()

    def _on_signal(signum):
        logger.info(f"🛑 Received signal {signum}, shutting down...")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, int(sig))
        except NotImplementedError:
            signal.signal(sig, lambda s, _f: _on_signal(int(s)))

    try:
        try:
            await client.start()
        except ClientConnectError as e:
            logger.error(f"❌ Connection failed: {e}")
            if "token" in str(e).lower():
                logger.error("Please regenerate your token in Settings")
            return 1
        except ProvisioningError as e:
            logger.error(f"❌ {e}")
            return 1

        await stop_event.wait()
        return 0
    finally:
        await client.shutdown()


def cli():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    cli()
