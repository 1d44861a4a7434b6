#!/usr/bin/env python3
"""
Sandbox backend - serves local sandbox clients and runs maintenance sweeps
"""
import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from core.command_store import CommandStore
from core.rpc_server import LocalSandboxRpcServer
from utils.constants import CONNECTION_LIVENESS_SECONDS, MAINTENANCE_INTERVAL_SECONDS, STALE_CONNECTION_SECONDS
from utils.helpers import load_config


def parse_cli_args(argv=None):
    """Parse runtime CLI arguments."""
    parser = argparse.ArgumentParser(description="Sandbox execution backend")
    parser.add_argument(
        "--config",
        default="config.yaml",
        help="Path to config YAML file (default: config.yaml)",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Override listen host",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Override listen port",
    )
    parser.add_argument(
        "--validate-only",
        action="store_true",
        help="Validate config and print resolved settings, then exit",
    )
    return parser.parse_args(argv)


def apply_runtime_overrides(config: dict, args) -> dict:
    """Apply runtime CLI overrides onto loaded config."""
    if config is None:
        config = {}
    server = config.setdefault("server", {})
    if args.host:
        server["host"] = args.host
    if args.port is not None:
        server["port"] = args.port
    return config


def setup_logging(config: dict):
    """Setup logging based on configuration"""
    log_config = config.get('logging', {})
    level = getattr(logging, str(log_config.get('level', 'INFO')).upper(), logging.INFO)
    handlers = [logging.StreamHandler(sys.stdout)]
    log_file = log_config.get('file')
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format='[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s',
        handlers=handlers,
    )

    # Reduce noise from libraries
    logging.getLogger('aiohttp.access').setLevel(logging.WARNING)


def build_store(config: dict) -> CommandStore:
    local_cfg = config.get("local_sandbox", {})
    store = CommandStore(
        liveness_seconds=float(local_cfg.get("liveness_seconds", CONNECTION_LIVENESS_SECONDS)),
        stale_seconds=float(local_cfg.get("stale_seconds", STALE_CONNECTION_SECONDS)),
    )
    for user_id, token in (local_cfg.get("tokens") or {}).items():
        store.set_token(str(user_id), str(token))
    return store


def build_server(config: dict, store: CommandStore) -> LocalSandboxRpcServer:
    server_cfg = config.get("server", {})
    local_cfg = config.get("local_sandbox", {})
    return LocalSandboxRpcServer(
        store,
        host=str(server_cfg.get("host", "127.0.0.1")),
        port=int(server_cfg.get("port", 8787)),
        maintenance_interval_seconds=float(
            local_cfg.get("maintenance_interval_seconds", MAINTENANCE_INTERVAL_SECONDS)
        ),
    )


def print_runtime_summary(config: dict, args, server: LocalSandboxRpcServer) -> None:
    local_cfg = config.get("local_sandbox", {})
    print("✅ Config validation passed")
    print(f"config: {args.config}")
    print(f"server: {server.host}:{server.port}")
    print(f"logging.file: {config.get('logging', {}).get('file')}")
    print(f"local_sandbox.tokens: {len(local_cfg.get('tokens') or {})} user(s)")
    print(f"local_sandbox.liveness_seconds: {server.store.liveness_seconds}")
    print(f"local_sandbox.stale_seconds: {server.store.stale_seconds}")
    print(f"local_sandbox.maintenance_interval_seconds: {server.maintenance_interval_seconds}")
    print(f"e2b.template: {config.get('e2b', {}).get('template')}")


async def main(argv=None):
    args = parse_cli_args(argv)
    config = apply_runtime_overrides(load_config(args.config), args)
    setup_logging(config)
    logger = logging.getLogger(__name__)

    store = build_store(config)
    server = build_server(config, store)
    if args.validate_only:
        print_runtime_summary(config, args, server)
        return

    try:
        await server.start()
        logger.info("✅ Local sandbox RPC listening on %s:%d", server.host, server.port)
        logger.info("🚀 Sandbox backend is running")

        shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        def _request_shutdown(sig_num: int):
            logger.info(f"Received signal {sig_num}, shutting down...")
            shutdown_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _request_shutdown, int(sig))
            except NotImplementedError:
                signal.signal(sig, lambda s, _f: _request_shutdown(int(s)))

        await shutdown_event.wait()

        logger.info("Shutting down...")
        await server.stop()
        logger.info("✅ Shutdown complete")

    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n👋 Interrupted by user")


if __name__ == "__main__":
    cli()
