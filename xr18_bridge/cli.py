"""
XR18 Bridge CLI - Command-line interface for the bridge.

Entry point:
    xr18-bridge   - run the console <-> WebSocket bridge
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from xr18_bridge.config import BridgeConfig, load_config
from xr18_bridge.logging_config import configure_logging

logger = logging.getLogger(__name__)

# Fix Windows console encoding for unicode characters
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")


def validate_port(value: str) -> int:
    """Validate port number is in valid range."""
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid port number: {value}")

    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"Port must be between 1 and 65535, got: {port}")
    return port


def validate_hostname(value: str) -> str:
    """Validate hostname or IP address."""
    if not value or len(value) > 253:
        raise argparse.ArgumentTypeError(f"Invalid hostname: {value}")
    valid_chars = set("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789.-:[]")
    if not all(c in valid_chars for c in value):
        raise argparse.ArgumentTypeError(f"Invalid characters in hostname: {value}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="xr18-bridge",
        description="XR18 Bridge - OSC/UDP console session relayed to WebSocket clients",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  xr18-bridge                               # Defaults (or $XR18_HOST etc.)
  xr18-bridge --xr18-host 192.168.1.50      # Different console address
  xr18-bridge --config bridge.json --debug  # JSON config, verbose logs
        """,
    )

    parser.add_argument("--config", "-c", type=Path, help="JSON config file (default: environment)")
    parser.add_argument("--xr18-host", type=validate_hostname, help="Console IP ($XR18_HOST)")
    parser.add_argument("--xr18-port", type=validate_port, help="Console OSC port ($XR18_PORT)")
    parser.add_argument(
        "--local-port", type=validate_port, help="Local UDP port for the console session ($XR18_LOCAL_PORT)"
    )
    parser.add_argument("--host", type=validate_hostname, help="WebSocket bind host ($BRIDGE_HOST)")
    parser.add_argument("--port", "-p", type=validate_port, help="WebSocket port ($BRIDGE_PORT)")
    parser.add_argument(
        "--metrics-port", type=validate_port, help="Port for /health and /metrics ($METRICS_PORT)"
    )
    parser.add_argument("--no-metrics", action="store_true", help="Disable metrics HTTP endpoint")
    parser.add_argument("--debug", action="store_true", help="Debug logging incl. client traffic")
    parser.add_argument(
        "--log-meters",
        action="store_true",
        help="Include meter-bearing messages in traffic logs (very noisy)",
    )
    return parser


def resolve_config(args: argparse.Namespace) -> BridgeConfig:
    """Config file (or environment), then CLI overrides."""
    config = load_config(args.config) if args.config else BridgeConfig.from_env()

    overrides = {
        "console_host": args.xr18_host,
        "console_port": args.xr18_port,
        "local_port": args.local_port,
        "ws_host": args.host,
        "ws_port": args.port,
        "metrics_port": args.metrics_port,
    }
    for name, value in overrides.items():
        if value is not None:
            setattr(config, name, value)
    if args.no_metrics:
        config.metrics_port = None
    if args.log_meters:
        config.log_meter_traffic = True
    return config.validate()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = resolve_config(args)
    except (ValueError, OSError) as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return 2

    configure_logging(
        level=logging.DEBUG if args.debug else logging.INFO,
        log_meter_traffic=config.log_meter_traffic,
    )

    from xr18_bridge.bridge import XR18Bridge

    bridge = XR18Bridge(config)

    async def _run_bridge():
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, bridge.stop)
            except NotImplementedError:
                # Windows: KeyboardInterrupt still ends asyncio.run
                pass
        await bridge.run()

    try:
        asyncio.run(_run_bridge())
    except KeyboardInterrupt:
        pass
    except OSError as e:
        logger.error(f"Failed to bind sockets: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
