#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pillow>=10.1"
# ]
# ///
"""Render a text-message conversation over a background video as an MP4."""

from __future__ import annotations

import argparse
from dataclasses import dataclass, replace
import json
import logging
import os
import sys
import uuid
from typing import Sequence, Tuple

from domain.chat_video import (
    INPUT_FILE_CODE,
    INVALID_CONFIG_CODE,
    ChatVideoPipelineError,
    ChatVideoValidationError,
    CompositorConfig,
    CompositorError,
    Message,
    VoiceSettings,
    parse_durations,
    parse_messages,
    parse_voice_settings,
)
from service.conversation_job import (
    ComposedConversation,
    ConversationRequest,
    MediaTools,
    compose_conversation,
    run_conversation_job,
)
from service.ffmpeg_adapter import probe_video_dimensions
from service.speech import build_elevenlabs_synthesizer

LOGGER = logging.getLogger("chat_video")

DEFAULT_WORK_ROOT = "temp"


@dataclass(frozen=True)
class CliRequest:
    """Parsed CLI request and runtime options."""

    messages: Tuple[Message, ...]
    voices: VoiceSettings | None
    durations: Tuple[float, ...] | None
    background_video: str | None
    chat_frame: str | None
    config: CompositorConfig
    output_video_file: str
    work_dir: str
    emit_plan: bool
    frame_size: Tuple[int, int] | None
    tools: MediaTools


def configure_logging() -> None:
    """Configure logging for CLI output."""
    logging.basicConfig(level=logging.INFO, format="%(message)s")


def read_utf8_text_strict(file_path: str) -> str:
    """Read a UTF-8 file with strict decoding."""
    try:
        with open(file_path, "rb") as file_handle:
            file_bytes = file_handle.read()
    except FileNotFoundError as exc:
        raise ChatVideoValidationError(
            INPUT_FILE_CODE, f"script file not found: {file_path}"
        ) from exc

    try:
        return file_bytes.decode("utf-8", errors="strict")
    except UnicodeDecodeError as exc:
        raise ChatVideoValidationError(
            INPUT_FILE_CODE,
            f"script file is not valid UTF-8 at byte offset {exc.start}",
        ) from exc


def load_script(file_path: str) -> dict[str, object]:
    """Load a conversation script.

    Accepts either a bare list of messages or an object with ``messages``
    and optional ``voiceSettings``.
    """
    try:
        payload = json.loads(read_utf8_text_strict(file_path))
    except json.JSONDecodeError as exc:
        raise ChatVideoValidationError(
            INPUT_FILE_CODE, f"script file is not valid JSON: {exc}"
        ) from exc
    if isinstance(payload, list):
        return {"messages": payload}
    if not isinstance(payload, dict):
        raise ChatVideoValidationError(
            INPUT_FILE_CODE, "script must be a list or an object with messages"
        )
    return payload


def parse_args(argv: Sequence[str]) -> CliRequest:
    """Parse CLI arguments into a CliRequest."""
    parser = argparse.ArgumentParser(prog="render_chat_video.py", add_help=True)
    parser.add_argument("--script", required=True)
    parser.add_argument("--background-video", default=None)
    parser.add_argument("--chat-frame-image", default=None)
    parser.add_argument("--output-video-file", default="conversation.mp4")
    parser.add_argument("--work-dir", default=None)
    parser.add_argument("--durations", default=None)
    parser.add_argument("--width", type=int, default=None)
    parser.add_argument("--height", type=int, default=None)
    parser.add_argument("--font-path", default=None)
    parser.add_argument("--visible-slots", type=int, default=None)
    parser.add_argument("--pause-seconds", type=float, default=None)
    parser.add_argument("--sync-offset", type=float, default=None)
    parser.add_argument("--ffmpeg-path", default="ffmpeg")
    parser.add_argument("--ffprobe-path", default="ffprobe")
    parser.add_argument("--emit-plan", action="store_true")

    parsed = parser.parse_args(argv)
    script = load_script(parsed.script)
    messages = parse_messages(script.get("messages"))
    voices = None
    if script.get("voiceSettings") is not None:
        voices = parse_voice_settings(script.get("voiceSettings"))
    durations = None
    if parsed.durations is not None:
        durations = parse_durations(parsed.durations, len(messages))

    if not parsed.output_video_file.lower().endswith(".mp4"):
        raise ChatVideoValidationError(
            INVALID_CONFIG_CODE, "output-video-file must end with .mp4"
        )
    if (parsed.width is None) != (parsed.height is None):
        raise ChatVideoValidationError(
            INVALID_CONFIG_CODE, "width and height must be given together"
        )
    frame_size = None
    if parsed.width is not None and parsed.height is not None:
        frame_size = (parsed.width, parsed.height)

    if parsed.emit_plan:
        if durations is None:
            raise ChatVideoValidationError(
                INVALID_CONFIG_CODE, "emit-plan requires durations"
            )
        if frame_size is None and parsed.background_video is None:
            raise ChatVideoValidationError(
                INVALID_CONFIG_CODE,
                "emit-plan requires width/height or background-video",
            )
    elif parsed.background_video is None:
        raise ChatVideoValidationError(
            INVALID_CONFIG_CODE, "background-video is required"
        )

    config = CompositorConfig()
    if parsed.font_path is not None:
        config = replace(
            config, bubble_style=replace(config.bubble_style, font_path=parsed.font_path)
        )
    if parsed.visible_slots is not None:
        config = replace(config, visible_slots=parsed.visible_slots)
    if parsed.pause_seconds is not None:
        config = replace(config, pause_seconds=parsed.pause_seconds)
    if parsed.sync_offset is not None:
        config = replace(config, sync_offset_seconds=parsed.sync_offset)

    work_dir = parsed.work_dir or os.path.join(DEFAULT_WORK_ROOT, uuid.uuid4().hex)
    return CliRequest(
        messages=messages,
        voices=voices,
        durations=durations,
        background_video=parsed.background_video,
        chat_frame=parsed.chat_frame_image,
        config=config,
        output_video_file=parsed.output_video_file,
        work_dir=work_dir,
        emit_plan=parsed.emit_plan,
        frame_size=frame_size,
        tools=MediaTools(
            ffmpeg_path=parsed.ffmpeg_path, ffprobe_path=parsed.ffprobe_path
        ),
    )


def build_plan_payload(composed: ComposedConversation) -> dict[str, object]:
    """Describe the timeline, schedule and layer stack as JSON data."""
    payload = composed.plan.to_payload()
    payload["start_times"] = list(composed.timeline.start_times)
    payload["intervals"] = [
        {
            "message_index": interval.message_index,
            "slot": interval.slot,
            "start_seconds": interval.start_seconds,
            "end_seconds": interval.end_seconds,
        }
        for interval in composed.intervals
    ]
    payload["bubbles"] = [
        {
            "message_index": bubble.message_index,
            "path": bubble.path,
            "width": bubble.width,
            "height": bubble.height,
            "lines": list(bubble.lines),
        }
        for bubble in composed.bubbles
    ]
    return payload


def emit_plan(request: CliRequest) -> None:
    """Compose the conversation and write the plan to stdout."""
    if request.frame_size is not None:
        frame_width, frame_height = request.frame_size
    else:
        frame_width, frame_height = probe_video_dimensions(
            request.background_video or "", request.tools.ffprobe_path
        )
    os.makedirs(request.work_dir, exist_ok=True)
    composed = compose_conversation(
        request.messages,
        request.durations or (),
        frame_width,
        frame_height,
        request.work_dir,
        request.config,
        request.chat_frame,
    )
    sys.stdout.write(json.dumps(build_plan_payload(composed), ensure_ascii=True))


def render_video(request: CliRequest) -> str:
    """Render and publish the conversation video."""
    conversation = ConversationRequest(
        messages=request.messages,
        background_video=request.background_video or "",
        voices=request.voices,
        chat_frame=request.chat_frame,
        durations=request.durations,
    )
    synthesizer = None
    if conversation.durations is None:
        synthesizer = build_elevenlabs_synthesizer(dict(os.environ))
    return run_conversation_job(
        job_id=os.path.basename(os.path.normpath(request.work_dir)),
        request=conversation,
        work_dir=request.work_dir,
        output_path=request.output_video_file,
        config=request.config,
        synthesizer=synthesizer,
        tools=request.tools,
    )


def main() -> int:
    """CLI entrypoint."""
    configure_logging()

    try:
        request = parse_args(sys.argv[1:])
        if request.emit_plan:
            emit_plan(request)
        else:
            render_video(request)
        return 0
    except ChatVideoValidationError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except CompositorError as exc:
        LOGGER.error("%s: [%s] %s", exc.code, exc.stage, str(exc).strip())
        return 1
    except ChatVideoPipelineError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except Exception as exc:
        LOGGER.error("chat_video.unhandled_error: %s", str(exc).strip())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
