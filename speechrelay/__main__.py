"""Main entry point for speechrelay."""
import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import DEFAULT_CONFIG, get_platform_config_dir, load_config, save_config
from .protocol import RecordingData, RecordingError, RecordingStatusChange, describe_error

STOP_ACK_TIMEOUT_S = 5.0


def _print_results(message: RecordingData) -> None:
    for result in message.data or []:
        if result.is_final:
            print(f'[TEXT] "{result.transcript}"')
        else:
            print(f"[INFO] ... {result.transcript}")


def _print_error(message: RecordingError) -> None:
    print(f"[ERR] {describe_error(message.error)}")


def _print_status(message: RecordingStatusChange) -> None:
    state = "recording" if message.recording else "idle"
    print(f"[INFO] Relay is {state}")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="speechrelay - relay microphone audio to Cloud Speech-to-Text"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.toml (searched for when omitted)",
    )
    # Bare `speechrelay` serves with config values.
    parser.set_defaults(host=None, port=None, backend=None)
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the relay server (default)")
    serve.add_argument("--host", default=None, help="Interface to bind")
    serve.add_argument("--port", type=int, default=None, help="Port to listen on")
    serve.add_argument(
        "--backend",
        choices=["google", "mock"],
        default=None,
        help="Speech backend to relay to",
    )

    listen = sub.add_parser("listen", help="Stream the microphone and print transcripts")
    listen.add_argument("--url", default=None, help="Relay WebSocket URL")
    listen.add_argument("--phrase", action="append", default=None, help="Phrase hint (repeatable)")
    listen.add_argument(
        "--seconds",
        type=float,
        default=None,
        help="Stop after this many seconds (runs until Ctrl+C otherwise)",
    )

    transcribe = sub.add_parser("transcribe", help="Recognize a complete audio file")
    transcribe.add_argument("file", type=Path, help="Audio file (WAV/raw LINEAR16 or FLAC)")
    transcribe.add_argument("--url", default=None, help="Relay WebSocket URL")
    transcribe.add_argument("--sample-rate", type=int, default=16000, help="File sample rate")

    sub.add_parser("init-config", help="Write the default config.toml")
    return parser


async def _run_listen(
    config: Dict[str, Any],
    phrases: Optional[List[str]],
    seconds: Optional[float],
) -> None:
    from .client import RelayClient

    client = RelayClient.from_config(
        config,
        on_status_change=_print_status,
        on_data=_print_results,
        on_error=_print_error,
    )
    await client.connect()
    listener = asyncio.create_task(client.listen())
    try:
        await client.start(phrases=phrases)
        if seconds is None:
            await listener
            return
        await asyncio.sleep(seconds)
        await client.stop()
        try:
            await asyncio.wait_for(client.stopped.wait(), timeout=STOP_ACK_TIMEOUT_S)
        except asyncio.TimeoutError:
            print("[WARN] Relay did not acknowledge stop")
    finally:
        listener.cancel()
        await client.close()


async def _run_transcribe(config: Dict[str, Any], path: Path, sample_rate: int) -> bool:
    from .client import RelayClient

    loop = asyncio.get_running_loop()
    done: asyncio.Future = loop.create_future()

    def _finish(message) -> None:
        if not done.done():
            done.set_result(message)

    client = RelayClient.from_config(config, on_data=_finish, on_error=_finish)
    await client.connect()
    listener = asyncio.create_task(client.listen())
    try:
        parameters = await client.process_file(path, sample_rate=sample_rate)
        print(f"[INFO] Sent {path.name} ({parameters['encoding']}, {parameters['sampleRate']} Hz)")
        await asyncio.wait({done, listener}, return_when=asyncio.FIRST_COMPLETED)
        if not done.done():
            raise RuntimeError("Connection closed before a result arrived")
        message = done.result()
    finally:
        listener.cancel()
        await client.close()

    if isinstance(message, RecordingError):
        _print_error(message)
        return False
    _print_results(message)
    return True


def main() -> None:
    """Main entry point."""
    args = _build_parser().parse_args()
    command = args.command or "serve"

    if command == "init-config":
        target = args.config or get_platform_config_dir() / "config.toml"
        save_config(target, DEFAULT_CONFIG)
        print(f"[OK] Wrote default config to {target}")
        return

    config = load_config(path=args.config)

    try:
        if command == "serve":
            from .server import RelayServer

            if args.backend:
                config["speech"]["backend"] = args.backend
            RelayServer(config, host=args.host, port=args.port).run()

        elif command == "listen":
            if args.url:
                config["client"]["server_url"] = args.url
            asyncio.run(_run_listen(config, args.phrase, args.seconds))

        elif command == "transcribe":
            if args.url:
                config["client"]["server_url"] = args.url
            if not asyncio.run(_run_transcribe(config, args.file, args.sample_rate)):
                sys.exit(1)

    except KeyboardInterrupt:
        print("\n[INFO] Interrupted by user")
    except Exception as e:
        print(f"\n[ERR] Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
