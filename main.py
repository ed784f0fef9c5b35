#!/usr/bin/env python3
"""
Duet - two-party calls over a signal relay.

Main entry point:
    python main.py loopback [--video] [--duration 10]
    python main.py xmpp [--config xmpp.yaml] [--call bob@example.com] [--auto-answer]
"""

import argparse
import asyncio
import os
import signal
import sys
from pathlib import Path


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='Duet - two-party audio/video calls'
    )
    parser.add_argument(
        '--profile',
        default='default',
        help='Profile name (default: default)'
    )
    parser.add_argument(
        '--log-level',
        default='INFO',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Log level (default: INFO)'
    )
    parser.add_argument(
        '--xdg',
        action='store_true',
        help='Use XDG Base Directory paths (~/.config, ~/.local/share)'
    )
    parser.add_argument(
        '--dot-data-dir',
        action='store_true',
        help='Use ~/.duet directory for all data'
    )

    commands = parser.add_subparsers(dest='command', required=True)

    loopback = commands.add_parser('loopback', help='Call between two in-process peers')
    loopback.add_argument('--video', action='store_true', help='Video call (test pattern)')
    loopback.add_argument('--duration', type=float, default=10.0, help='Seconds to stay connected')

    xmpp = commands.add_parser('xmpp', help='Place or answer calls over XMPP')
    xmpp.add_argument('--config', help='YAML account config (default: <config_dir>/xmpp.yaml)')
    xmpp.add_argument('--call', metavar='JID', help='Call this JID after login')
    xmpp.add_argument('--video', action='store_true', help='Send video')
    xmpp.add_argument('--auto-answer', action='store_true', help='Accept incoming calls automatically')
    xmpp.add_argument('--synthetic', action='store_true', help='Use test media instead of devices')

    return parser.parse_args(argv)


def load_config(config_path: Path) -> dict:
    """
    Load the YAML account config.

    Expected keys: jid, password; optional: max_signal_age, discover_ice_servers.
    """
    import yaml

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}

    missing = [key for key in ('jid', 'password') if not config.get(key)]
    if missing:
        raise ValueError(f"Config {config_path} missing: {', '.join(missing)}")
    return config


async def run_loopback(args, logger):
    """Two managers on an in-memory relay, real aiortc connections."""
    from duet.core import load_call_settings
    from duet.core.call_manager import CallManager
    from duet_call.media import SyntheticMediaSource
    from duet_call.relay import InMemorySignalRelay

    settings = load_call_settings()
    relay = InMemorySignalRelay()
    alice = CallManager('alice', relay, SyntheticMediaSource(), settings=settings)
    bob = CallManager('bob', relay, SyntheticMediaSource(), settings=settings)
    connected = asyncio.Event()

    def bob_rings(call_id, from_user_id, has_video):
        logger.info(f"[bob] incoming call from {from_user_id}, answering")
        asyncio.ensure_future(bob.accept_call(call_id, has_video))

    def alice_state(session):
        logger.info(f"[alice] call {session.call_id[:8]} is {session.status.value}")
        if session.status.value == 'connected':
            connected.set()

    bob.on_incoming_call = bob_rings
    alice.on_state_change = alice_state
    alice.start()
    bob.start()

    await alice.start_call('bob', has_video=args.video)
    try:
        await asyncio.wait_for(connected.wait(), timeout=settings.negotiation_timeout)
    except asyncio.TimeoutError:
        logger.error("Loopback call did not connect")
        await asyncio.gather(alice.close(), bob.close())
        return 1

    await asyncio.sleep(args.duration)
    logger.info(f"[alice] stats: {await alice.get_call_stats()}")
    alice.hangup()
    await asyncio.gather(alice.close(), bob.close())
    return 0


async def run_xmpp(args, paths, logger):
    """Login, listen for calls and optionally place one."""
    from duet.core import load_call_settings
    from duet.core.call_manager import CallManager
    from duet_call.media import DeviceMediaSource, SyntheticMediaSource
    from duet_xmpp import DuetXMPP, XmppSignalRelay

    config_path = Path(args.config) if args.config else paths.xmpp_config_path()
    config = load_config(config_path)
    settings = load_call_settings()

    ready = asyncio.Event()
    client = DuetXMPP(
        config['jid'],
        config['password'],
        max_signal_age=config.get('max_signal_age', 120),
        discover_ice_servers=config.get('discover_ice_servers', True),
        on_ready_callback=lambda: _set_event(ready),
    )

    if args.synthetic:
        media = SyntheticMediaSource()
    else:
        media = DeviceMediaSource(
            microphone_device=settings.microphone_device,
            camera_device=settings.camera_device,
            display_device=settings.display_device,
            video_size=settings.video_size,
            framerate=settings.framerate,
        )

    relay = XmppSignalRelay(client)
    manager = CallManager(client.boundjid.bare, relay, media, settings=settings)

    def on_incoming(call_id, from_user_id, has_video):
        if args.auto_answer:
            logger.info(f"Auto-answering call from {from_user_id}")
            asyncio.ensure_future(manager.accept_call(call_id))
        else:
            logger.info(f"Incoming call from {from_user_id} (start with --auto-answer to accept)")

    manager.on_incoming_call = on_incoming
    manager.on_state_change = lambda session: logger.info(f"Call {session.call_id[:8]}: {session.status.value}")
    manager.on_error = lambda kind, reason: logger.error(f"Call error: {kind.value} ({reason})")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)

    client.connect()
    await ready.wait()
    manager.ice_servers = client.ice_servers + settings.ice_servers
    manager.start()

    if args.call:
        await manager.start_call(args.call, has_video=args.video)

    await stop.wait()
    logger.info("Shutting down...")
    await manager.close()
    client.disconnect()
    return 0


async def _set_event(event: asyncio.Event):
    event.set()


def main(argv=None):
    """Main application entry point."""
    args = parse_args(argv)

    # Set path mode BEFORE importing duet modules (paths.py reads it at import time)
    if args.dot_data_dir:
        os.environ['DUET_PATH_MODE'] = 'dot'
    elif args.xdg:
        os.environ['DUET_PATH_MODE'] = 'xdg'

    from duet.utils import get_paths, setup_main_logger
    from duet.version import get_version_string

    paths = get_paths(args.profile)
    logger = setup_main_logger(args.log_level)

    logger.info("=" * 60)
    logger.info(f"{get_version_string()} starting ({args.command})")
    logger.info("=" * 60)
    logger.info(f"Config dir: {paths.config_dir}")
    logger.info(f"Log dir: {paths.log_dir}")

    if args.command == 'loopback':
        return asyncio.run(run_loopback(args, logger))

    try:
        return asyncio.run(run_xmpp(args, paths, logger))
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Cannot start XMPP mode: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
