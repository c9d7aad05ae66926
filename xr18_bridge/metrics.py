"""
Health and metrics HTTP endpoint for bridge monitoring.

Provides lightweight HTTP endpoints:
- GET /health - JSON health check
- GET /metrics - Prometheus-compatible text format metrics
"""

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING

from xr18_bridge.liveness import LivenessState

if TYPE_CHECKING:
    from xr18_bridge.bridge import XR18Bridge

logger = logging.getLogger(__name__)


async def handle_http_request(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    bridge: "XR18Bridge",
) -> None:
    """Handle a single HTTP request."""
    try:
        # Read request line
        request_line = await reader.readline()
        if not request_line:
            return

        parts = request_line.decode("utf-8", errors="replace").strip().split()
        if len(parts) < 2:
            return

        method, path = parts[0], parts[1]

        # Discard headers
        while True:
            line = await reader.readline()
            if not line or line == b"\r\n":
                break

        if method == "GET" and path == "/health":
            _write_response(writer, "200 OK", "application/json", json.dumps(health_data(bridge), indent=2))
        elif method == "GET" and path == "/metrics":
            _write_response(writer, "200 OK", "text/plain; version=0.0.4", metrics_text(bridge))
        else:
            _write_response(writer, "404 Not Found", "text/plain", "Not Found")

    except (ConnectionError, asyncio.IncompleteReadError, UnicodeDecodeError) as e:
        logger.debug(f"Metrics request aborted: {e}")
    except Exception as e:
        logger.error(f"Error handling metrics request: {e}")
    finally:
        try:
            await writer.drain()
            writer.close()
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass


def _write_response(writer: asyncio.StreamWriter, status: str, content_type: str, body: str) -> None:
    payload = body.encode("utf-8")
    head = (
        f"HTTP/1.1 {status}\r\n"
        f"Content-Type: {content_type}\r\n"
        f"Content-Length: {len(payload)}\r\n"
        "\r\n"
    )
    writer.write(head.encode("utf-8") + payload)


def health_data(bridge: "XR18Bridge") -> dict:
    """Body of /health."""
    liveness = bridge.liveness
    last_reply, last_meter = liveness.timestamps()
    return {
        "status": "ok",
        "uptime_seconds": round(time.time() - bridge.start_time, 2),
        "connection_state": liveness.state.value,
        "last_console_reply_at": last_reply,
        "last_meter_frame_at": last_meter,
        "connected_clients": bridge.relay.client_count,
        "registered_channels": bridge.store.channel_count,
    }


def metrics_text(bridge: "XR18Bridge") -> str:
    """Body of /metrics in Prometheus text format."""
    session = bridge.session
    relay = bridge.relay
    liveness = bridge.liveness
    uptime = time.time() - bridge.start_time

    lines = [
        "# HELP xr18_uptime_seconds Bridge uptime in seconds",
        "# TYPE xr18_uptime_seconds gauge",
        f"xr18_uptime_seconds {uptime:.2f}",
        "",
        "# HELP xr18_connected_clients Number of currently connected WebSocket clients",
        "# TYPE xr18_connected_clients gauge",
        f"xr18_connected_clients {relay.client_count}",
        "",
        "# HELP xr18_console_frames_total Decoded OSC frames received from the console",
        "# TYPE xr18_console_frames_total counter",
        f"xr18_console_frames_total {session.frames_received}",
        "",
        "# HELP xr18_meter_frames_total Decoded meter blobs received from the console",
        "# TYPE xr18_meter_frames_total counter",
        f"xr18_meter_frames_total {session.meter_frames}",
        "",
        "# HELP xr18_decode_failures_total Datagrams or meter blobs that failed to decode",
        "# TYPE xr18_decode_failures_total counter",
        f"xr18_decode_failures_total {session.decode_failures}",
        "",
        "# HELP xr18_blocked_writes_total Control writes rejected while not LIVE",
        "# TYPE xr18_blocked_writes_total counter",
        f"xr18_blocked_writes_total {relay.blocked_writes}",
        "",
        "# HELP xr18_recovery_attempts_total One-shot STALE recovery attempts",
        "# TYPE xr18_recovery_attempts_total counter",
        f"xr18_recovery_attempts_total {liveness.recovery_attempts}",
        "",
        "# HELP xr18_connection_state Current console connection state (1 = active)",
        "# TYPE xr18_connection_state gauge",
    ]
    for state in LivenessState:
        active = 1 if liveness.state is state else 0
        lines.append(f'xr18_connection_state{{state="{state.value}"}} {active}')
    lines.append("")
    return "\n".join(lines)


async def start_metrics_server(
    bridge: "XR18Bridge",
    port: int,
    host: str = "0.0.0.0",
) -> asyncio.Server:
    """Start the metrics HTTP server.

    Args:
        bridge: XR18Bridge instance to expose metrics for
        port: Port to listen on
        host: Host to bind to (default: 0.0.0.0)

    Returns:
        asyncio.Server instance
    """

    async def client_handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        await handle_http_request(reader, writer, bridge)

    metrics_server = await asyncio.start_server(client_handler, host, port)
    logger.info(f"Metrics server: http://{host}:{port}/health, /metrics")
    return metrics_server
