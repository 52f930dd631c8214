"""
Command-line runner: listen to one or more DX clusters and print their spots.

    dxlistener dxc.example.org 7300 N0CALL
    dxlistener --config ./config/config.json --output text --record spots.jsonl
"""
import sys
import signal
import asyncio
import logging
import argparse
from typing import List, Optional

from dxlistener.providers.dispatcher import SpotChannel
from dxlistener.providers.dxcluster import DXClusterProvider
from dxlistener.providers.errors import ChannelClosed, ConfigError, ConnectError
from dxlistener.recorder import SpotRecorder
from dxlistener.utils.config import (
    AppConfig, ClusterConfig, LOG_LEVELS, OUTPUT_FORMATS, load_config
)
from dxlistener.utils.formatters import format_spot

logger = logging.getLogger("dxlistener")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dxlistener",
        description="Listen to DX cluster servers and print their spots.",
    )
    parser.add_argument("host", nargs="?", help="Cluster host (overrides the config file)")
    parser.add_argument("port", nargs="?", type=int, help="Cluster port")
    parser.add_argument("call", nargs="?", help="Callsign used to log in")
    parser.add_argument("--config", help="Config file (default: $DXLISTENER_CONFIG or ./config/config.json)")
    parser.add_argument("--output", choices=OUTPUT_FORMATS, help="Spot output format")
    parser.add_argument("--record", metavar="PATH", help="Append spots to a JSON-lines file")
    parser.add_argument("--log-level", choices=LOG_LEVELS, type=str.upper, help="Logging level")
    return parser


def resolve_config(args: argparse.Namespace) -> AppConfig:
    """
    Combine command-line arguments and the config file.

    Positional HOST PORT CALL describe a single cluster and skip the file.
    """
    positional = [args.host, args.port, args.call]
    if any(p is not None for p in positional):
        if not all(p is not None for p in positional):
            raise ConfigError("HOST, PORT and CALL must be given together")
        config = AppConfig(clusters=[ClusterConfig(host=args.host, port=args.port, login_identity=args.call)])
    else:
        config = load_config(args.config)

    if args.output:
        config.output = args.output
    if args.record:
        config.record_path = args.record
    if args.log_level:
        config.log_level = args.log_level
    return config


async def _forward(channel: SpotChannel, merged: SpotChannel):
    """Copy one provider's spots into the shared output channel."""
    try:
        async for spot in channel:
            await merged.send(spot)
    except ChannelClosed:
        channel.close()


async def run(config: AppConfig) -> int:
    """
    Run every configured cluster until interrupted.

    Returns:
        Process exit code
    """
    # =======================
    # Providers
    # =======================
    providers = [DXClusterProvider(c) for c in config.clusters]
    merged = SpotChannel(sum(c.channel_capacity for c in config.clusters))

    def emit(spot):
        if config.output == "text":
            print(format_spot(spot, show_source=True), flush=True)
        else:
            print(spot.to_json(), flush=True)

    recorder = SpotRecorder(merged, path=config.record_path, callback=emit)
    recorder.start()

    forwarders = []
    for p in providers:
        forwarders.append(asyncio.create_task(_forward(p.start(), merged)))
        logger.info(f"Listening to {p.source_name}")

    # =======================
    # Signals
    # =======================
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt still ends asyncio.run()
            pass

    async def all_done():
        await asyncio.gather(*forwarders)

    done_task = asyncio.create_task(all_done())
    stop_task = asyncio.create_task(stop_event.wait())
    await asyncio.wait({done_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

    # =======================
    # Shutdown
    # =======================
    if stop_event.is_set():
        logger.info("Stop requested, shutting down listeners...")
    stop_task.cancel()

    for p in providers:
        await p.stop()
    await done_task
    merged.finish()
    await recorder.wait_closed()

    failures = 0
    for p in providers:
        try:
            await p.wait_closed()
        except ConnectError as ex:
            failures += 1
            logger.error(f"Listener {p.source_name} stopped unexpectedly ({ex})")
        logger.debug(f"Final status: {p.status()}")

    logger.info(f"Recorded {recorder.count} spot(s).")
    if providers and failures == len(providers):
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    # =======================
    # Logging Setup
    # =======================
    logging.basicConfig(
        level=args.log_level or logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    # =======================
    # Load Configuration
    # =======================
    try:
        config = resolve_config(args)
    except ConfigError as ex:
        logger.error(f"Failed to load config: {ex}")
        return 1
    logging.getLogger().setLevel(config.log_level)

    # =======================
    # Run Listeners
    # =======================
    try:
        return asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
