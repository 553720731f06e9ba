"""
main.py — Basma Voice Entry Point

Usage:
    python main.py                          # listen, print final transcripts
    python main.py listen --echo            # ...and speak each one back
    python main.py speak "مرحبا" --lang ar  # backend TTS with local fallback
    python main.py transcribe clip.wav      # one-shot /stt
    python main.py health                   # is the speech backend up?
    python main.py --log-level DEBUG        # verbose logging
    python main.py --config path/to/config.yaml
"""

from __future__ import annotations
# ─────────────────────────────────────────────────────────────────────────────
# Load environment variables before settings are built
# ─────────────────────────────────────────────────────────────────────────────

from dotenv import load_dotenv
from pathlib import Path

ENV_PATH = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=ENV_PATH)

# ─────────────────────────────────────────────────────────────────────────────
import argparse
import asyncio
import mimetypes
import sys


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="basma-voice",
        description="Basma Voice — real-time voice interaction core",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $BASMA_VOICE_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )

    sub = parser.add_subparsers(dest="command")

    listen = sub.add_parser("listen", help="Listen continuously and print transcripts (default)")
    listen.add_argument("--echo", action="store_true", default=False,
                        help="Speak each final transcript back")

    speak = sub.add_parser("speak", help="Speak TEXT (backend TTS, local fallback)")
    speak.add_argument("text", help="Text to speak")
    speak.add_argument("--lang", default=None, help="Language tag, e.g. ar-SA or en-US")

    transcribe = sub.add_parser("transcribe", help="Transcribe an audio file via the backend")
    transcribe.add_argument("file", help="Audio file (wav, mp3, ...)")

    sub.add_parser("health", help="Check the speech backend")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "listen"
        args.echo = False
    return args


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml has invalid values (Pydantic ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from config.settings import load_settings, ConfigError
    from observability.logger import setup_logging, get_logger
    from pydantic import ValidationError

    # -- Load and parse -------------------------------------------------------
    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {e['loc'][-1] if e['loc'] else '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError, TypeError) as exc:
        print(
            f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n",
            file=sys.stderr,
        )
        sys.exit(1)

    # -- Cross-field validation -----------------------------------------------
    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    # -- Logging --------------------------------------------------------------
    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.log_json_format,
        console_output=settings.log_console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )

    log = get_logger("basma_voice.main")
    return settings, log


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings, log = bootstrap(args)
    voice = settings.effective_voice

    log.info(
        "basma_voice.starting",
        command=args.command,
        backend_url=voice.backend_url,
        language=voice.language,
    )

    if args.command == "listen":
        return await _run_listen(settings, log, echo=args.echo)
    if args.command == "speak":
        return await _run_speak(settings, log, args.text, args.lang)
    if args.command == "transcribe":
        return await _run_transcribe(settings, log, Path(args.file))
    if args.command == "health":
        return await _run_health(settings, log)
    return 1


async def _run_listen(settings, log, echo: bool) -> int:
    """Delegates to interfaces/voice.py."""
    from interfaces.voice import run_voice

    try:
        await run_voice(settings=settings, log_=log, echo=echo)
    except KeyboardInterrupt:
        log.info("voice.interrupted")
    return 0


async def _run_speak(settings, log, text: str, lang: str | None) -> int:
    from interfaces.voice import VoiceInterface
    from speech.types import SpeechOutcome

    async with VoiceInterface(settings) as vi:
        outcome = await vi.speak(text, lang)
    log.info("voice.speak_done", outcome=outcome.value)
    if outcome is SpeechOutcome.FAILED:
        print("\n❌ Could not speak: backend and local synthesis both failed.\n", file=sys.stderr)
        return 1
    return 0


async def _run_transcribe(settings, log, path: Path) -> int:
    from exceptions import BackendUnavailableError
    from speech.backend_client import BackendClient

    try:
        audio = path.read_bytes()
    except OSError as e:
        print(f"\n❌ Cannot read {path}: {e}\n", file=sys.stderr)
        return 1

    mime_type = mimetypes.guess_type(path.name)[0] or "audio/wav"
    voice = settings.effective_voice
    async with BackendClient(voice.backend_url, timeout_s=settings.backend.timeout_s) as client:
        try:
            result = await client.transcribe(audio, mime_type)
        except BackendUnavailableError as e:
            log.error("transcribe.failed", error=str(e), status=e.status_code)
            print(f"\n❌ {e}\n", file=sys.stderr)
            return 1

    suffix = f"  [{result.language}]" if result.language else ""
    print(f"{result.text}{suffix}")
    return 0


async def _run_health(settings, log) -> int:
    from speech.backend_client import BackendClient

    voice = settings.effective_voice
    async with BackendClient(voice.backend_url, timeout_s=settings.backend.timeout_s) as client:
        ok = await client.health()
    print(f"{'✅' if ok else '❌'} {voice.backend_url}")
    return 0 if ok else 1


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
