"""Tests for ffmpeg command and filter graph construction."""

from __future__ import annotations

import pytest

from domain.chat_video import ChatVideoPipelineError
from service.ffmpeg_adapter import (
    build_audio_concat_command,
    build_compose_command,
    build_enable_expression,
    build_overlay_graph,
    probe_video_dimensions,
)
from service.render_plan import ContainerGeometry, RenderLayer, RenderPlan

CONTAINER = ContainerGeometry(
    frame_width=1080, frame_height=1920, x=54, y=58, width=972, height=1056
)


def frame_layer(image_path: str | None) -> RenderLayer:
    return RenderLayer(
        image_path=image_path,
        x=CONTAINER.x,
        y=CONTAINER.y,
        width=CONTAINER.width,
        height=CONTAINER.height,
        start_seconds=0.0,
        end_seconds=None,
    )


def bubble_layer(
    path: str, slot: int, start: float, end: float, x: int = 84
) -> RenderLayer:
    return RenderLayer(
        image_path=path,
        x=x,
        y=500 + slot * 145,
        width=200,
        height=123,
        start_seconds=start,
        end_seconds=end,
        message_index=0,
        slot=slot,
    )


def make_plan(frame_path: str | None) -> RenderPlan:
    return RenderPlan(
        container=CONTAINER,
        layers=(
            frame_layer(frame_path),
            bubble_layer("b0.png", 2, 0.0, 1.45),
            bubble_layer("b0.png", 1, 1.45, 3.0),
            bubble_layer("b1.png", 2, 1.45, 3.0, x=742),
        ),
        total_duration_seconds=3.0,
    )


def test_enable_expression_is_half_open() -> None:
    """Windows include their start and exclude their end."""
    layer = bubble_layer("b.png", 0, 0.95, 2.5)

    assert build_enable_expression(layer) == "gte(t,0.950000)*lt(t,2.500000)"
    assert build_enable_expression(frame_layer(None)) == "gte(t,0.000000)"


def test_overlay_graph_with_frame_image() -> None:
    """The frame is scaled into the container and bubbles chain on top."""
    graph = build_overlay_graph(make_plan("frame.png"), image_input_offset=1)

    assert graph.image_inputs == ("frame.png", "b0.png", "b1.png")
    assert graph.filters == (
        "[1:v]scale=972:1056[frame]",
        "[0:v][frame]overlay=x=54:y=58[v0]",
        "[v0][2:v]overlay=x=84:y=790:enable='gte(t,0.000000)*lt(t,1.450000)'[v1]",
        "[v1][2:v]overlay=x=84:y=645:enable='gte(t,1.450000)*lt(t,3.000000)'[v2]",
        "[v2][3:v]overlay=x=742:y=790:enable='gte(t,1.450000)*lt(t,3.000000)'[v3]",
    )
    assert graph.output_label == "[v3]"


def test_overlay_graph_without_frame_image_draws_box() -> None:
    """A missing frame image becomes a translucent filled box."""
    graph = build_overlay_graph(make_plan(None), image_input_offset=2)

    assert graph.image_inputs == ("b0.png", "b1.png")
    assert graph.filters[0] == (
        "[0:v]drawbox=x=54:y=58:w=972:h=1056:color=black@0.75:t=fill[v0]"
    )
    assert graph.filters[1].startswith("[v0][2:v]overlay=")
    assert graph.filters[3].startswith("[v2][3:v]overlay=")


def test_compose_command_with_audio() -> None:
    """Audio is mapped from the second input and the output is trimmed."""
    command = build_compose_command("bg.mp4", "audio.m4a", make_plan(None), "out.mp4")

    assert command[:6] == ["ffmpeg", "-y", "-i", "bg.mp4", "-i", "audio.m4a"]
    assert command[command.index("-t") + 1] == "3.000000"
    assert "1:a" in command
    assert command[command.index("-c:v") + 1] == "libx264"
    assert command[command.index("-preset") + 1] == "ultrafast"
    assert command[command.index("-crf") + 1] == "23"
    assert command[command.index("-b:a") + 1] == "192k"
    assert command[-1] == "out.mp4"
    graph = command[command.index("-filter_complex") + 1]
    assert "[2:v]overlay" in graph


def test_compose_command_without_audio_drops_audio_stream() -> None:
    """Without an audio track, images start at input one and audio is off."""
    command = build_compose_command("bg.mp4", None, make_plan(None), "out.mp4")

    assert "-an" in command
    assert "1:a" not in command
    graph = command[command.index("-filter_complex") + 1]
    assert "[1:v]overlay" in graph


def test_audio_concat_pads_all_but_last_clip() -> None:
    """A pause follows every clip except the last."""
    command = build_audio_concat_command(
        ["m0.mp3", "m1.mp3", "m2.mp3"], 0.5, "track.m4a"
    )
    graph = command[command.index("-filter_complex") + 1]

    assert graph.count("apad=pad_dur=0.500000") == 2
    assert "[2:a]aresample=44100,aformat=channel_layouts=stereo[a2]" in graph
    assert graph.endswith("[a0][a1][a2]concat=n=3:v=0:a=1[aout]")
    assert command[-1] == "track.m4a"


def test_audio_concat_requires_clips() -> None:
    """Concatenating nothing is an error."""
    with pytest.raises(ChatVideoPipelineError):
        build_audio_concat_command([], 0.5, "track.m4a")


def test_probe_fails_cleanly_without_ffprobe() -> None:
    """A missing ffprobe binary is reported with a stable code."""
    with pytest.raises(ChatVideoPipelineError) as exc_info:
        probe_video_dimensions("bg.mp4", ffprobe_path="ffprobe-does-not-exist")

    assert exc_info.value.code == "chat_video.ffmpeg.not_found"
