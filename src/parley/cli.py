#!/usr/bin/env python3
"""
Parley CLI - Command Line Interface for Parley
"""
import argparse
import asyncio
import logging
import os
import signal
import sys


def _print_status(state, detail):
    suffix = f" ({detail})" if detail else ""
    print(f"[status] {state.value}{suffix}")


def _print_transcript(turn):
    if turn.text:
        print(f"[{turn.role}] {turn.text}")


async def _run_conversation(settings) -> int:
    from .controller import ConversationController

    controller = ConversationController(settings)
    controller.events.on("status_changed", _print_status)
    controller.events.on("user_speaking", lambda speaking: speaking and print("[user] ..."))
    controller.events.on("transcript_updated", _print_transcript)
    controller.events.on("turn_count_changed", lambda count: print(f"[turns] {count}"))

    ended = asyncio.Event()
    end_reason = {}

    def on_ended(reason):
        end_reason["reason"] = reason
        ended.set()

    controller.events.on("session_ended", on_ended)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, ended.set)
    except (NotImplementedError, RuntimeError):
        # Windows event loops have no signal handlers; KeyboardInterrupt still works
        pass

    if not await controller.start():
        print(f"Could not start conversation: {end_reason.get('reason', 'unknown error')}")
        return 1

    print("Listening. Press Ctrl+C to stop.")
    await ended.wait()
    await controller.stop("user_stop")
    reason = end_reason.get("reason", "user_stop")
    print(f"Conversation ended: {reason}")
    return 0 if reason == "user_stop" else 1


def _cmd_run(args) -> int:
    from . import config as CFG

    settings = CFG.load_settings()
    if args.strategy:
        settings.turn.strategy = args.strategy
    if args.transport:
        settings.transport.kind = args.transport
    if args.url:
        if settings.transport.kind == "polling":
            settings.transport.api_url = args.url
        else:
            settings.transport.url = args.url
    return asyncio.run(_run_conversation(settings))


def _cmd_devices(args) -> int:
    from .audio_source import list_devices
    from .error_handler import DeviceUnavailable

    try:
        print(list_devices())
    except DeviceUnavailable as e:
        print(f"Error: {e}")
        return 1
    return 0


def _cmd_check_config(args) -> int:
    from . import config as CFG

    is_valid, errors = CFG.validate_config_silent()
    if is_valid:
        print(f"Configuration OK: {CFG.get_config_path()}")
        return 0
    for error in errors:
        print(error)
    return 1


def main(argv=None):
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        description="Parley - hands-free voice conversation engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  parley run                          # Talk using config/config.yaml
  parley run --strategy server        # Let the endpoint detect turns
  parley run --transport polling      # Use the HTTP polling endpoint
  parley devices                      # List audio devices
  parley check-config                 # Validate the configuration
        """
    )

    parser.add_argument(
        '--config',
        default=None,
        help='Path to configuration file (default: config/config.yaml or $PARLEY_CONFIG)'
    )

    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )

    parser.add_argument(
        '--json-logs',
        action='store_true',
        help='Write structured JSON log lines'
    )

    subparsers = parser.add_subparsers(dest='command', required=True)

    run_parser = subparsers.add_parser('run', help='Run a conversation until Ctrl+C')
    run_parser.add_argument('--strategy', choices=['local', 'server'], help='Turn detection strategy')
    run_parser.add_argument('--transport', choices=['websocket', 'polling'], help='Transport kind')
    run_parser.add_argument('--url', help='Endpoint URL (WebSocket URL or polling API base)')
    run_parser.set_defaults(handler=_cmd_run)

    devices_parser = subparsers.add_parser('devices', help='List audio input/output devices')
    devices_parser.set_defaults(handler=_cmd_devices)

    check_parser = subparsers.add_parser('check-config', help='Validate the configuration file')
    check_parser.set_defaults(handler=_cmd_check_config)

    args = parser.parse_args(argv)

    # Set debug mode
    if args.debug:
        os.environ['DEBUG'] = '1'

    try:
        from . import config as CFG
        from .logging_utils import set_level, set_structured

        if args.debug:
            set_level(logging.DEBUG)
        if args.json_logs:
            set_structured(True)
        if args.config:
            CFG.set_config_path(args.config)
        sys.exit(args.handler(args))
    except KeyboardInterrupt:
        print("\nShutting down...")
        sys.exit(0)
    except ValueError as e:
        print(f"Configuration error: {e}")
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
