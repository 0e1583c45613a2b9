"""
cli.py — Voice Engine · Command-line runner
===========================================
Runs one conversation session from the terminal and logs every finished
turn.  The token endpoint (see server.py) must be reachable.

    python -m voice_engine [--config PATH] [--wav FILE] [--push-to-talk]

--wav replays a file through the same conversion path as the microphone
and exits once it has been streamed.  --push-to-talk disables automatic
sends; whatever accumulated is sent when the session ends.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import Optional

from dotenv import load_dotenv

from voice_engine.config import VoiceEngineConfig
from voice_engine.controller import ConversationController
from voice_engine.wav_source import WavFileSource

load_dotenv()

log = logging.getLogger("voice_engine.cli")

# Grace period after a WAV replay so the last final transcript can arrive
WAV_DRAIN_SEC = 3.0


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )
    # websockets logs every frame at DEBUG
    logging.getLogger("websockets").setLevel(logging.INFO)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="voice-engine", description="Run one voice turn-taking session.")
    parser.add_argument("--config", default=os.getenv("VOICE_ENGINE_CONFIG", "voice_engine.json"),
                        help="JSON config file (defaults used when missing)")
    parser.add_argument("--wav", help="Replay this WAV file instead of capturing the microphone")
    parser.add_argument("--push-to-talk", action="store_true",
                        help="Accumulate only; send once when the session ends")
    return parser


async def main(config: VoiceEngineConfig, wav: Optional[str] = None, push_to_talk: bool = False) -> int:
    stopped = asyncio.Event()
    failures: list[str] = []

    def on_utterance(text: str) -> None:
        log.info("event=utterance text=%r", text)
        print(text, flush=True)

    def on_error(kind: str, message: str) -> None:
        failures.append(message)
        print(f"error ({kind}): {message}", file=sys.stderr, flush=True)
        stopped.set()

    audio_factory = None
    if wav:
        audio_factory = lambda audio_config: WavFileSource(wav, audio_config)  # noqa: E731

    controller = ConversationController(config, on_error=on_error, audio_factory=audio_factory)
    try:
        if push_to_talk:
            started = await controller.start_listening(on_utterance)
        else:
            started = await controller.start_continuous_mode(on_utterance)
        if not started:
            return 1

        log.info("event=cli_ready mode=%s source=%s", "push_to_talk" if push_to_talk else "continuous",
                 wav or "microphone")
        if wav:
            done = asyncio.ensure_future(controller.wait_audio_finished())
            halted = asyncio.ensure_future(stopped.wait())
            await asyncio.wait({done, halted}, return_when=asyncio.FIRST_COMPLETED)
            halted.cancel()
            if not stopped.is_set():
                await asyncio.sleep(WAV_DRAIN_SEC)
        else:
            await stopped.wait()

        if push_to_talk:
            controller.send_current_transcript()
            # Let the queued utterance callback run before teardown
            await asyncio.sleep(0)
    finally:
        if controller.is_continuous_mode:
            await controller.stop_continuous_mode()
        await controller.cleanup()
        metrics = controller.quality.metrics()
        log.info(
            "event=cli_done utterances=%d avg_confidence=%.3f samples=%d trend=%s",
            controller.utterances_sent, metrics.average_confidence, metrics.total_samples, metrics.trend.value,
        )
    return 1 if failures else 0


def run(argv: Optional[list[str]] = None) -> None:
    _configure_logging()
    args = build_parser().parse_args(argv)
    config = VoiceEngineConfig.load(args.config)
    try:
        code = asyncio.run(main(config, wav=args.wav, push_to_talk=args.push_to_talk))
    except KeyboardInterrupt:
        log.info("event=cli_interrupted")
        code = 0
    sys.exit(code)
