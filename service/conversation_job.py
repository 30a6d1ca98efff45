"""End-to-end orchestration of a single chat video job."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import shutil
from pathlib import Path
from typing import Callable, Sequence, Tuple

from domain.chat_video import (
    INVALID_REQUEST_CODE,
    SCHEDULE_DURATION_CODE,
    AudioTimeline,
    BubbleImage,
    ChatVideoPipelineError,
    ChatVideoValidationError,
    CompositorConfig,
    DisplayInterval,
    Message,
    SchedulingError,
    VoiceSettings,
)
from service.audio_timeline import build_audio_timeline
from service.bubble_layout import BubbleRenderer, render_bubbles
from service.ffmpeg_adapter import (
    build_audio_concat_command,
    build_compose_command,
    probe_audio_duration,
    probe_video_dimensions,
    run_ffmpeg,
)
from service.render_plan import RenderPlan, build_render_plan, compute_container_geometry
from service.slot_scheduler import schedule_display_intervals
from service.speech import SpeechSynthesizer, fetch_asset

LOGGER = logging.getLogger("chat_video")

PUBLISH_CODE = "chat_video.output.publish_failed"

ProgressCallback = Callable[[str, float], None]
DurationProbe = Callable[[str], float]


@dataclass(frozen=True)
class ConversationRequest:
    """Inputs for one conversation video."""

    messages: Tuple[Message, ...]
    background_video: str
    voices: VoiceSettings | None = None
    chat_frame: str | None = None
    durations: Tuple[float, ...] | None = None

    def __post_init__(self) -> None:
        if not self.messages:
            raise ChatVideoValidationError(
                INVALID_REQUEST_CODE, "conversation must contain messages"
            )
        if not self.background_video.strip():
            raise ChatVideoValidationError(
                INVALID_REQUEST_CODE, "background video is required"
            )
        if self.voices is None and self.durations is None:
            raise ChatVideoValidationError(
                INVALID_REQUEST_CODE, "voice settings or durations are required"
            )
        if self.durations is not None and len(self.durations) != len(self.messages):
            raise ChatVideoValidationError(
                INVALID_REQUEST_CODE, "one duration is required per message"
            )


@dataclass(frozen=True)
class MediaTools:
    """Paths to the ffmpeg executables."""

    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"


@dataclass(frozen=True)
class ComposedConversation:
    """Everything the compositor produced for a conversation."""

    timeline: AudioTimeline
    bubbles: Tuple[BubbleImage, ...]
    intervals: Tuple[DisplayInterval, ...]
    plan: RenderPlan


def report_noop(message: str, progress: float) -> None:
    return None


def compose_conversation(
    messages: Sequence[Message],
    durations: Sequence[float],
    frame_width: int,
    frame_height: int,
    work_dir: str,
    config: CompositorConfig,
    chat_frame_path: str | None = None,
    renderer: BubbleRenderer | None = None,
) -> ComposedConversation:
    """Lay out, time and schedule a conversation into a render plan."""
    if len(durations) != len(messages):
        missing_index = min(len(durations), len(messages))
        raise SchedulingError(
            SCHEDULE_DURATION_CODE,
            f"expected {len(messages)} durations, got {len(durations)}",
            missing_index,
        )
    timeline = build_audio_timeline(durations, config.pause_seconds)
    container = compute_container_geometry(frame_width, frame_height, config)

    active_renderer = renderer or BubbleRenderer.from_style(config.bubble_style)
    bubbles = render_bubbles(
        active_renderer,
        [message.text for message in messages],
        [message.sender for message in messages],
        work_dir,
    )
    intervals = schedule_display_intervals(
        timeline.start_times,
        timeline.total_duration_seconds,
        visible_slots=config.visible_slots,
        sync_offset=config.sync_offset_seconds,
        min_display=config.min_display_seconds,
    )
    plan = build_render_plan(
        messages,
        bubbles,
        intervals,
        chat_frame_path,
        container,
        config,
        timeline.total_duration_seconds,
    )
    return ComposedConversation(
        timeline=timeline, bubbles=bubbles, intervals=intervals, plan=plan
    )


def synthesize_messages(
    messages: Sequence[Message],
    voices: VoiceSettings,
    synthesizer: SpeechSynthesizer,
    work_dir: str,
    probe_duration: DurationProbe,
) -> Tuple[Tuple[str, ...], Tuple[float, ...]]:
    """Synthesize each message and measure the resulting clip."""
    audio_paths: list[str] = []
    durations: list[float] = []
    for message in messages:
        audio_path = os.path.join(work_dir, f"message_{message.index}.mp3")
        voice_id = voices.voice_for(message.sender)
        LOGGER.info(
            "chat_video.speech.request index=%s voice=%s", message.index, voice_id
        )
        synthesizer.synthesize(message.text, voice_id, audio_path)
        duration = probe_duration(audio_path)
        LOGGER.info(
            "chat_video.speech.duration index=%s seconds=%.3f", message.index, duration
        )
        audio_paths.append(audio_path)
        durations.append(duration)
    return tuple(audio_paths), tuple(durations)


def publish_video(source_path: str, output_path: str) -> str:
    """Move a finished video to its published location."""
    try:
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        shutil.move(source_path, output_path)
    except OSError as exc:
        raise ChatVideoPipelineError(
            PUBLISH_CODE, f"failed to publish video: {exc}"
        ) from exc
    return output_path


def run_conversation_job(
    job_id: str,
    request: ConversationRequest,
    work_dir: str,
    output_path: str,
    config: CompositorConfig,
    synthesizer: SpeechSynthesizer | None = None,
    tools: MediaTools = MediaTools(),
    report: ProgressCallback = report_noop,
) -> str:
    """Produce the conversation video and return its published path."""
    os.makedirs(work_dir, exist_ok=True)
    LOGGER.info("chat_video.job.started job_id=%s messages=%s", job_id, len(request.messages))

    report("Fetching background video", 0.05)
    background_path = fetch_asset(
        request.background_video, os.path.join(work_dir, "background.mp4")
    )
    frame_width, frame_height = probe_video_dimensions(
        background_path, tools.ffprobe_path
    )
    LOGGER.info(
        "chat_video.job.background job_id=%s size=%sx%s", job_id, frame_width, frame_height
    )

    chat_frame_path = None
    if request.chat_frame:
        report("Fetching chat frame", 0.1)
        chat_frame_path = fetch_asset(
            request.chat_frame, os.path.join(work_dir, "chat_frame.png")
        )

    audio_paths: Tuple[str, ...] = ()
    if request.durations is not None:
        durations = request.durations
    else:
        if synthesizer is None or request.voices is None:
            raise ChatVideoValidationError(
                INVALID_REQUEST_CODE, "speech synthesis requires voices and a synthesizer"
            )
        report("Synthesizing speech", 0.2)
        audio_paths, durations = synthesize_messages(
            request.messages,
            request.voices,
            synthesizer,
            work_dir,
            lambda path: probe_audio_duration(path, tools.ffprobe_path),
        )

    report("Laying out bubbles", 0.5)
    composed = compose_conversation(
        request.messages,
        durations,
        frame_width,
        frame_height,
        work_dir,
        config,
        chat_frame_path,
    )
    LOGGER.info(
        "chat_video.job.planned job_id=%s layers=%s duration=%.3f",
        job_id,
        len(composed.plan.layers),
        composed.plan.total_duration_seconds,
    )

    audio_track = None
    if audio_paths:
        report("Concatenating audio", 0.6)
        audio_track = os.path.join(work_dir, "conversation_audio.m4a")
        run_ffmpeg(
            build_audio_concat_command(
                audio_paths, config.pause_seconds, audio_track, tools.ffmpeg_path
            ),
            "audio_concat",
        )

    report("Encoding video", 0.7)
    rendered_path = os.path.join(work_dir, "conversation.mp4")
    run_ffmpeg(
        build_compose_command(
            background_path, audio_track, composed.plan, rendered_path, tools.ffmpeg_path
        ),
        "compose",
    )
    published = publish_video(rendered_path, output_path)
    LOGGER.info("chat_video.job.completed job_id=%s output=%s", job_id, published)
    return published
