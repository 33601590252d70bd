from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from dataclasses import replace
from typing import Optional, Sequence

from core import AudioDeviceError, PlaybackController
from shared.app_settings import AppSettings
from shared.models import ChannelId, DecoderMode
from shared.sample_buffer import LoadError

logger = logging.getLogger("voyager")

TICK_HZ = 30.0


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Play a Golden Record WAV and decode it line by line")
    parser.add_argument("path", help="WAV file to load")
    parser.add_argument("--seconds", type=float, default=10.0, help="How long to run the playback loop")
    parser.add_argument("--no-audio", action="store_true", help="Visual-only: do not open an output device")
    parser.add_argument("--channel", choices=["left", "right"], default="left")
    parser.add_argument("--mode", choices=[m.value for m in DecoderMode], default=None)
    parser.add_argument("--line-duration-ms", type=float, default=None)
    parser.add_argument("--threshold", type=float, default=None)
    parser.add_argument("--seek-sync", action="store_true", help="Jump to the first sync signal before playing")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("VOYAGER_LOG_LEVEL", "INFO"),
        help="Logging verbosity (e.g. DEBUG, INFO, WARNING)",
    )
    return parser.parse_args(argv)


def _build_settings(args: argparse.Namespace) -> AppSettings:
    settings = AppSettings.from_env(os.environ)
    decoder = settings.decoder
    if args.mode is not None:
        decoder = replace(decoder, default_mode=DecoderMode(args.mode))
    if args.line_duration_ms is not None:
        decoder = replace(decoder, default_line_duration_ms=args.line_duration_ms)
    if args.threshold is not None:
        decoder = replace(decoder, default_threshold=args.threshold)
    playback = settings.playback
    if args.no_audio:
        playback = replace(playback, audio_enabled=False)
    settings = replace(settings, decoder=decoder, playback=playback)
    settings.validate()
    return settings


def _log_status(controller: PlaybackController) -> None:
    result = controller.latest_result
    rows = result.height if result is not None else 0
    logger.info(
        "%s | %.2fs | image rows=%d | generation %d/%d",
        controller.state,
        controller.position_seconds,
        rows,
        controller.last_applied_generation,
        controller.last_issued_generation,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    log_level = getattr(logging, str(args.log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        settings = _build_settings(args)
    except ValueError as exc:
        logger.error("Invalid settings: %s", exc)
        return 2

    sink_factory = None
    if settings.playback.audio_enabled:
        from audio.player import make_default_sink

        try:
            sink = make_default_sink(settings.playback)
        except AudioDeviceError as exc:
            logger.warning("%s; continuing without audio", exc)
        else:
            sink_factory = lambda: sink  # noqa: E731

    controller = PlaybackController(settings=settings, sink_factory=sink_factory)
    try:
        try:
            controller.load_file(args.path)
        except LoadError as exc:
            logger.error("%s", exc)
            return 1
        controller.set_channel(ChannelId.RIGHT if args.channel == "right" else ChannelId.LEFT)

        if args.seek_sync:
            controller.seek_to_next_sync()
        controller.play()

        period = 1.0 / TICK_HZ
        deadline = time.monotonic() + max(0.0, args.seconds)
        last_status = 0.0
        while time.monotonic() < deadline:
            controller.tick()
            now = time.monotonic()
            if now - last_status >= 1.0:
                _log_status(controller)
                last_status = now
            if controller.state.is_error:
                logger.error("%s", controller.state.status_message)
                break
            if controller.metrics.stop_count:
                logger.info("Playback finished")
                break
            time.sleep(period)
        controller.stop()
        controller.tick()
        _log_status(controller)
        for key, value in controller.stats.snapshot().items():
            logger.info("%s: %s", key, value)
    finally:
        controller.shutdown()
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
