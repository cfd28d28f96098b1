#!/usr/bin/env python3
"""
TitanLink CLI - run the signaling service, host or join a session.
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

# PID file location
PID_FILE = Path("/tmp/titanlink-signaling.pid")


def get_pid() -> int | None:
    """Get PID from file if exists."""
    if PID_FILE.exists():
        try:
            pid = int(PID_FILE.read_text().strip())
            # Check if process is running
            os.kill(pid, 0)
            return pid
        except (ValueError, OSError):
            PID_FILE.unlink(missing_ok=True)
    return None


def write_pid() -> None:
    PID_FILE.write_text(str(os.getpid()))


def remove_pid() -> None:
    PID_FILE.unlink(missing_ok=True)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


def load_cli_config(args):
    """Load config and apply the options shared by every command."""
    from .config import reload_config

    config = reload_config(Path(args.config) if args.config else None)
    if args.verbose:
        config._config["logging"]["level"] = "DEBUG"
    if getattr(args, "signaling_url", None):
        config._config["signaling"]["url"] = args.signaling_url
    setup_logging(config.log_level)
    return config


def cmd_serve(args) -> int:
    """Run the signaling service."""
    existing_pid = get_pid()
    if existing_pid:
        print(f"❌ TitanLink signaling is already running (PID: {existing_pid})")
        print("   Run 'titanlink stop' first")
        return 1

    # Import here to avoid loading when not needed
    from .server import run_server

    config = load_cli_config(args)
    if args.host:
        config._config["signaling"]["host"] = args.host
    if args.port:
        config._config["signaling"]["port"] = args.port

    print(f"🚀 TitanLink signaling on {config.host}:{config.port}")

    write_pid()
    try:
        run_server(config)
    except KeyboardInterrupt:
        pass
    finally:
        remove_pid()

    return 0


def cmd_stop(args) -> int:
    """Stop the signaling service."""
    pid = get_pid()

    if not pid:
        print("ℹ️  TitanLink signaling is not running")
        return 0

    try:
        os.kill(pid, signal.SIGTERM)
        print(f"✅ Stopped TitanLink signaling (PID: {pid})")
        remove_pid()
        return 0
    except OSError as e:
        print(f"❌ Failed to stop: {e}")
        remove_pid()
        return 1


async def fetch_status(host: str, port: int, timeout: float = 2.0) -> Optional[dict]:
    """Query the service's health endpoint."""
    import aiohttp

    url = f"http://{host}:{port}/"
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.get(url) as response:
                return await response.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError):
        return None


def cmd_status(args) -> int:
    """Check service status."""
    from .config import get_config

    pid = get_pid()
    if not pid:
        print("❌ TitanLink signaling is not running")
        return 1

    print(f"✅ TitanLink signaling is running (PID: {pid})")

    config = get_config()
    host = "127.0.0.1" if config.host in ("0.0.0.0", "") else config.host
    print(f"   URL: ws://{host}:{config.port}")

    status = asyncio.run(fetch_status(host, config.port))
    if status is None:
        print("   Health endpoint not reachable")
    else:
        print(f"   Active sessions: {status.get('sessions', 0)}")
    return 0


def _print_callbacks():
    from .peer import ConnectionState, SessionCallbacks

    def on_state_change(state: ConnectionState) -> None:
        print(f"   State: {state.value}")

    def on_peer_connected(peer_id: str) -> None:
        print(f"🎮 Peer connected: {peer_id}")

    def on_peer_disconnected(peer_id: Optional[str]) -> None:
        print(f"👋 Peer disconnected: {peer_id or '(unknown)'}")

    def on_error(reason: str) -> None:
        print(f"❌ {reason}")

    return SessionCallbacks(
        on_state_change=on_state_change,
        on_peer_connected=on_peer_connected,
        on_peer_disconnected=on_peer_disconnected,
        on_error=on_error,
    )


async def run_host(config) -> int:
    from .peer import PeerSession
    from .signaling_client import SignalingError

    session = PeerSession(config, callbacks=_print_callbacks())
    try:
        code = await session.start_hosting()
    except SignalingError:
        return 1

    print()
    print(f"📡 Session code: {code}")
    print("   Share it with the player, press Ctrl+C to stop")
    print()

    try:
        await session.wait_closed()
    finally:
        await session.disconnect()
    return 0


async def run_join(config, code: str, record: Optional[str] = None) -> int:
    from aiortc.contrib.media import MediaBlackhole, MediaRecorder

    from .peer import ConnectionState, PeerSession
    from .signaling_client import SignalingError

    sink = MediaRecorder(record) if record else MediaBlackhole()
    callbacks = _print_callbacks()
    pending = set()

    def on_stream_received(track) -> None:
        sink.addTrack(track)

    def on_state_change(state: ConnectionState) -> None:
        print(f"   State: {state.value}")
        if state == ConnectionState.STREAMING and not pending:
            pending.add(asyncio.create_task(sink.start()))

    callbacks.on_stream_received = on_stream_received
    callbacks.on_state_change = on_state_change

    session = PeerSession(config, callbacks=callbacks)
    try:
        await session.connect_to_host(code)
    except SignalingError:
        return 1

    try:
        await session.wait_closed()
    finally:
        await session.disconnect()
        await sink.stop()
    return 0


def cmd_host(args) -> int:
    """Host a streaming session."""
    config = load_cli_config(args)
    if args.bitrate:
        config._config["stream"]["bitrate"] = args.bitrate
    if args.fps:
        config._config["stream"]["fps"] = args.fps
    if args.monitor is not None:
        config._config["stream"]["monitor"] = args.monitor
    if args.audio_device:
        config._config["stream"]["audio_device"] = args.audio_device

    try:
        return asyncio.run(run_host(config))
    except KeyboardInterrupt:
        print("\nSession closed")
        return 0


def cmd_join(args) -> int:
    """Join a session by code."""
    config = load_cli_config(args)
    try:
        return asyncio.run(run_join(config, args.code, args.record))
    except KeyboardInterrupt:
        print("\nSession closed")
        return 0


def cmd_ice_servers(args) -> int:
    """Print the ICE server list peers would receive."""
    from .relay import RelayCredentialService

    config = load_cli_config(args)
    service = RelayCredentialService.from_config(config)
    servers = asyncio.run(service.get_ice_servers())
    print(json.dumps(servers, indent=2))
    return 0


def cmd_config(args) -> int:
    """Show current configuration."""
    from .config import get_config_paths

    config = load_cli_config(args)

    print("📝 Configuration:")
    print()

    print("   Config file search paths:")
    for path in get_config_paths():
        exists = "✓" if path.exists() else " "
        print(f"   [{exists}] {path}")
    print()

    print("   Current settings:")
    print(f"   - Signaling: {config.host}:{config.port} ({config.signaling_url})")
    print(f"   - Session TTL: {config.session_ttl_seconds / 60:.0f} minutes")
    print(f"   - Relay servers: {len(config.relay_servers)}")
    print(f"   - Twilio: {'configured' if config.twilio_account_sid else '(none)'}")
    print(f"   - Bitrate: {config.bitrate_mbps} Mbps")
    print(f"   - FPS: {config.fps}")
    print(f"   - Codec: {config.codec}")
    print(f"   - Monitor: {config.monitor}")
    print(f"   - Audio: {config.audio_device or '(none)'}")
    print(f"   - Adaptive quality: {config.adaptive_quality}")
    print(f"   - Log level: {config.log_level}")

    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="titanlink",
        description="Low-latency game streaming with remote controller input",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  titanlink serve                  # Run the signaling service
  titanlink serve --port 9000      # ...on a different port
  titanlink host                   # Share this screen, print a session code
  titanlink join K7WX2M            # Connect to a host
  titanlink ice-servers            # Show relay configuration
  titanlink stop                   # Stop the signaling service
        """
    )
    parser.add_argument("--config", "-c", help="Path to config.yaml")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Run the signaling service")
    serve_parser.add_argument("--host", help="Bind address (default: 0.0.0.0)")
    serve_parser.add_argument("--port", "-p", type=int, help="Port number (default: 3001)")
    serve_parser.set_defaults(func=cmd_serve)

    stop_parser = subparsers.add_parser("stop", help="Stop the signaling service")
    stop_parser.set_defaults(func=cmd_stop)

    status_parser = subparsers.add_parser("status", help="Check signaling service status")
    status_parser.set_defaults(func=cmd_status)

    host_parser = subparsers.add_parser("host", help="Host a session")
    host_parser.add_argument("--signaling-url", "-s", help="Signaling server URL")
    host_parser.add_argument("--bitrate", "-b", type=float, help="Video bitrate in Mbps (default: 10)")
    host_parser.add_argument("--fps", "-f", type=int, help="Frames per second (default: 60)")
    host_parser.add_argument("--monitor", "-m", type=int, help="Monitor index (default: 1)")
    host_parser.add_argument("--audio-device", help="FFmpeg audio input (default: none)")
    host_parser.set_defaults(func=cmd_host)

    join_parser = subparsers.add_parser("join", help="Join a session")
    join_parser.add_argument("code", help="6-character session code")
    join_parser.add_argument("--signaling-url", "-s", help="Signaling server URL")
    join_parser.add_argument("--record", "-r", help="Write the received stream to a file")
    join_parser.set_defaults(func=cmd_join)

    ice_parser = subparsers.add_parser("ice-servers", help="Print the assembled ICE server list")
    ice_parser.set_defaults(func=cmd_ice_servers)

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.set_defaults(func=cmd_config)

    return parser


def main(argv=None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
