"""Serialize render plans into ffmpeg commands and run them."""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import shutil
import subprocess
from typing import Sequence, Tuple

from domain.chat_video import ChatVideoPipelineError
from service.render_plan import RenderLayer, RenderPlan

LOGGER = logging.getLogger("chat_video")

FFMPEG_NOT_FOUND_CODE = "chat_video.ffmpeg.not_found"
FFMPEG_EXEC_CODE = "chat_video.ffmpeg.exec_error"
FFMPEG_PROCESS_CODE = "chat_video.ffmpeg.process_failed"
FFMPEG_PROBE_CODE = "chat_video.ffmpeg.probe_error"

H264_CODEC = "libx264"
H264_PIXEL_FORMAT = "yuv420p"
H264_CRF = "23"
H264_PRESET = "ultrafast"
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "192k"
AUDIO_SAMPLE_RATE = "44100"
FRAME_BOX_COLOR = "black@0.75"
BACKGROUND_INPUT_LABEL = "[0:v]"


@dataclass(frozen=True)
class OverlayGraph:
    """Filter graph for a render plan and the image inputs it reads."""

    image_inputs: Tuple[str, ...]
    filters: Tuple[str, ...]
    output_label: str


def ensure_tool_available(tool_path: str) -> str:
    """Resolve an ffmpeg-family executable and check it runs."""
    resolved = shutil.which(tool_path)
    if not resolved:
        raise ChatVideoPipelineError(FFMPEG_NOT_FOUND_CODE, f"{tool_path} not on PATH")
    try:
        subprocess.run(
            [resolved, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        raise ChatVideoPipelineError(
            FFMPEG_EXEC_CODE, f"{tool_path} exists but could not be executed"
        ) from exc
    return resolved


def run_ffprobe(arguments: Sequence[str], ffprobe_path: str) -> str:
    """Run ffprobe and return its stdout."""
    ensure_tool_available(ffprobe_path)
    try:
        result = subprocess.run(
            [ffprobe_path, "-v", "error", *arguments],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise ChatVideoPipelineError(
            FFMPEG_EXEC_CODE, f"ffprobe execution failed: {exc}"
        ) from exc
    if result.returncode != 0:
        raise ChatVideoPipelineError(
            FFMPEG_PROBE_CODE, f"ffprobe failed: {result.stderr.strip()}"
        )
    return result.stdout


def probe_audio_duration(audio_path: str, ffprobe_path: str = "ffprobe") -> float:
    """Return the duration of an audio file in seconds."""
    output = run_ffprobe(
        [
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            audio_path,
        ],
        ffprobe_path,
    )
    try:
        duration_seconds = float(output.strip())
    except ValueError as exc:
        raise ChatVideoPipelineError(
            FFMPEG_PROBE_CODE, f"audio duration unavailable: {audio_path}"
        ) from exc
    if duration_seconds < 0:
        raise ChatVideoPipelineError(
            FFMPEG_PROBE_CODE, f"audio duration invalid: {audio_path}"
        )
    return duration_seconds


def probe_video_dimensions(
    video_path: str, ffprobe_path: str = "ffprobe"
) -> Tuple[int, int]:
    """Return the width and height of the first video stream."""
    output = run_ffprobe(
        [
            "-select_streams",
            "v:0",
            "-show_entries",
            "stream=width,height",
            "-of",
            "json",
            video_path,
        ],
        ffprobe_path,
    )
    try:
        streams = json.loads(output).get("streams") or []
    except json.JSONDecodeError as exc:
        raise ChatVideoPipelineError(
            FFMPEG_PROBE_CODE, f"ffprobe output is not JSON: {video_path}"
        ) from exc
    if not streams:
        raise ChatVideoPipelineError(
            FFMPEG_PROBE_CODE, f"no video stream found: {video_path}"
        )
    width = streams[0].get("width")
    height = streams[0].get("height")
    if not isinstance(width, int) or not isinstance(height, int):
        raise ChatVideoPipelineError(
            FFMPEG_PROBE_CODE, f"could not find valid video stream dimensions: {video_path}"
        )
    return width, height


def format_seconds(value: float) -> str:
    """Format a timestamp for ffmpeg expressions."""
    return f"{value:.6f}"


def build_enable_expression(layer: RenderLayer) -> str:
    """Build a half-open [start, end) enable predicate."""
    start = format_seconds(layer.start_seconds)
    if layer.end_seconds is None:
        return f"gte(t,{start})"
    return f"gte(t,{start})*lt(t,{format_seconds(layer.end_seconds)})"


def build_overlay_graph(plan: RenderPlan, image_input_offset: int) -> OverlayGraph:
    """Translate the plan's layer stack into chained overlay filters.

    Each distinct image becomes one ffmpeg input, numbered from
    ``image_input_offset`` in first-use order.
    """
    image_inputs: list[str] = []
    input_indexes: dict[str, int] = {}
    for layer in plan.layers:
        if layer.image_path is not None and layer.image_path not in input_indexes:
            input_indexes[layer.image_path] = image_input_offset + len(image_inputs)
            image_inputs.append(layer.image_path)

    filters: list[str] = []
    frame_layer = plan.layers[0]
    if frame_layer.image_path is None:
        filters.append(
            f"{BACKGROUND_INPUT_LABEL}drawbox=x={frame_layer.x}:y={frame_layer.y}"
            f":w={frame_layer.width}:h={frame_layer.height}"
            f":color={FRAME_BOX_COLOR}:t=fill[v0]"
        )
    else:
        frame_input = input_indexes[frame_layer.image_path]
        filters.append(
            f"[{frame_input}:v]scale={frame_layer.width}:{frame_layer.height}[frame]"
        )
        filters.append(
            f"{BACKGROUND_INPUT_LABEL}[frame]overlay=x={frame_layer.x}:y={frame_layer.y}[v0]"
        )

    current_label = "[v0]"
    for layer_number, layer in enumerate(plan.bubble_layers, start=1):
        if layer.image_path is None:
            raise ChatVideoPipelineError(
                FFMPEG_PROCESS_CODE, "bubble layer is missing its image"
            )
        output_label = f"[v{layer_number}]"
        filters.append(
            f"{current_label}[{input_indexes[layer.image_path]}:v]"
            f"overlay=x={layer.x}:y={layer.y}"
            f":enable='{build_enable_expression(layer)}'{output_label}"
        )
        current_label = output_label

    return OverlayGraph(
        image_inputs=tuple(image_inputs),
        filters=tuple(filters),
        output_label=current_label,
    )


def build_audio_concat_command(
    audio_paths: Sequence[str],
    pause_seconds: float,
    output_path: str,
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    """Concatenate clips in order with a silence after all but the last."""
    if not audio_paths:
        raise ChatVideoPipelineError(FFMPEG_PROCESS_CODE, "no audio clips to concatenate")
    command = [ffmpeg_path, "-y"]
    for audio_path in audio_paths:
        command.extend(["-i", audio_path])

    filters: list[str] = []
    last_index = len(audio_paths) - 1
    for index in range(len(audio_paths)):
        chain = f"[{index}:a]aresample={AUDIO_SAMPLE_RATE},aformat=channel_layouts=stereo"
        if index < last_index and pause_seconds > 0:
            chain += f",apad=pad_dur={format_seconds(pause_seconds)}"
        filters.append(f"{chain}[a{index}]")
    labels = "".join(f"[a{index}]" for index in range(len(audio_paths)))
    filters.append(f"{labels}concat=n={len(audio_paths)}:v=0:a=1[aout]")

    command.extend(
        [
            "-filter_complex",
            ";".join(filters),
            "-map",
            "[aout]",
            "-c:a",
            AUDIO_CODEC,
            "-b:a",
            AUDIO_BITRATE,
            output_path,
        ]
    )
    return command


def build_compose_command(
    background_video: str,
    audio_track: str | None,
    plan: RenderPlan,
    output_path: str,
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    """Build the final ffmpeg invocation for a render plan."""
    command = [ffmpeg_path, "-y", "-i", background_video]
    if audio_track:
        command.extend(["-i", audio_track])
    image_input_offset = 2 if audio_track else 1
    graph = build_overlay_graph(plan, image_input_offset)
    for image_path in graph.image_inputs:
        command.extend(["-i", image_path])

    command.extend(
        [
            "-filter_complex",
            ";".join(graph.filters),
            "-map",
            graph.output_label,
        ]
    )
    if audio_track:
        command.extend(["-map", "1:a", "-c:a", AUDIO_CODEC, "-b:a", AUDIO_BITRATE])
    else:
        command.append("-an")
    command.extend(
        [
            "-t",
            format_seconds(plan.total_duration_seconds),
            "-c:v",
            H264_CODEC,
            "-preset",
            H264_PRESET,
            "-crf",
            H264_CRF,
            "-pix_fmt",
            H264_PIXEL_FORMAT,
            "-movflags",
            "+faststart",
            output_path,
        ]
    )
    return command


def run_ffmpeg(command: Sequence[str], label: str) -> None:
    """Run an ffmpeg command to completion."""
    ensure_tool_available(command[0])
    LOGGER.info("chat_video.ffmpeg.start step=%s", label)
    LOGGER.debug("chat_video.ffmpeg.command %s", " ".join(command))
    try:
        result = subprocess.run(
            list(command),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise ChatVideoPipelineError(
            FFMPEG_EXEC_CODE, f"ffmpeg execution failed: {exc}"
        ) from exc
    if result.returncode != 0:
        raise ChatVideoPipelineError(
            FFMPEG_PROCESS_CODE,
            f"ffmpeg {label} failed with exit code {result.returncode}. "
            f"{result.stderr.strip()}",
        )
