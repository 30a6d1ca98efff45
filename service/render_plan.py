"""Render plan construction for render_chat_video."""

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Sequence, Tuple

from domain.chat_video import (
    GEOMETRY_CONTAINER_CODE,
    GEOMETRY_FRAME_CODE,
    PLAN_INVALID_CODE,
    BubbleImage,
    ChatVideoPipelineError,
    CompositorConfig,
    DisplayInterval,
    GeometryError,
    Message,
    Sender,
)


@dataclass(frozen=True)
class ContainerGeometry:
    """Chat container rectangle within the background frame."""

    frame_width: int
    frame_height: int
    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class SlotGeometry:
    """Top Y coordinate of each visible slot, top slot first."""

    slot_tops: Tuple[int, ...]
    used_top_fallback: bool


@dataclass(frozen=True)
class RenderLayer:
    """Positioned image layer with an optional enable window.

    ``image_path`` of None draws a filled box instead of an image. An
    ``end_seconds`` of None means the layer stays enabled for the whole
    video.
    """

    image_path: str | None
    x: int
    y: int
    width: int
    height: int
    start_seconds: float
    end_seconds: float | None
    message_index: int | None = None
    slot: int | None = None

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ChatVideoPipelineError(
                PLAN_INVALID_CODE, "layer dimensions must be positive"
            )
        if self.start_seconds < 0:
            raise ChatVideoPipelineError(
                PLAN_INVALID_CODE, "layer start must be non-negative"
            )
        if self.end_seconds is not None and self.end_seconds <= self.start_seconds:
            raise ChatVideoPipelineError(
                PLAN_INVALID_CODE, "layer end must be after start"
            )

    def to_payload(self) -> dict[str, object]:
        return {
            "image_path": self.image_path,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "start_seconds": self.start_seconds,
            "end_seconds": self.end_seconds,
            "message_index": self.message_index,
            "slot": self.slot,
        }


@dataclass(frozen=True)
class RenderPlan:
    """Ordered layer stack, bottom first, plus the conversation length."""

    container: ContainerGeometry
    layers: Tuple[RenderLayer, ...]
    total_duration_seconds: float

    def __post_init__(self) -> None:
        if self.total_duration_seconds < 0:
            raise ChatVideoPipelineError(
                PLAN_INVALID_CODE, "total duration must be non-negative"
            )
        if not self.layers or self.layers[0].end_seconds is not None:
            raise ChatVideoPipelineError(
                PLAN_INVALID_CODE, "plan must start with the full-length frame layer"
            )

    @property
    def bubble_layers(self) -> Tuple[RenderLayer, ...]:
        return self.layers[1:]

    def to_payload(self) -> dict[str, object]:
        return {
            "frame": {
                "width": self.container.frame_width,
                "height": self.container.frame_height,
            },
            "container": {
                "x": self.container.x,
                "y": self.container.y,
                "width": self.container.width,
                "height": self.container.height,
            },
            "total_duration_seconds": self.total_duration_seconds,
            "layers": [layer.to_payload() for layer in self.layers],
        }


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from negative infinity."""
    return int(math.floor(value + 0.5))


def compute_container_geometry(
    frame_width: int, frame_height: int, config: CompositorConfig
) -> ContainerGeometry:
    """Derive the chat container rectangle from the background size."""
    if frame_width <= 0 or frame_height <= 0:
        raise GeometryError(
            GEOMETRY_FRAME_CODE,
            f"background dimensions must be positive: {frame_width}x{frame_height}",
        )
    width = round_half_up(frame_width * config.container_width_ratio)
    height = round_half_up(frame_height * config.container_height_ratio)
    return ContainerGeometry(
        frame_width=frame_width,
        frame_height=frame_height,
        x=round_half_up((frame_width - width) / 2),
        y=round_half_up(frame_height * config.container_top_ratio),
        width=width,
        height=height,
    )


def compute_slot_geometry(
    container: ContainerGeometry, config: CompositorConfig
) -> SlotGeometry:
    """Compute fixed slot positions from the average bubble height.

    Slots stack upward from the bottom of the usable chat area. When the
    stack would rise above the usable area, it is laid out downward from
    the top instead. Slot heights never depend on actual bubble sizes.
    """
    usable_top = container.y + container.height * config.header_ratio
    usable_bottom = (
        container.y + container.height - container.height * config.footer_ratio
    )
    pitch = config.avg_slot_height + config.slot_spacing
    slot_count = config.visible_slots

    tops = [0.0] * slot_count
    tops[slot_count - 1] = (
        usable_bottom - config.avg_slot_height - config.slot_bottom_padding
    )
    for slot in range(slot_count - 2, -1, -1):
        tops[slot] = tops[slot + 1] - pitch

    used_fallback = False
    for slot in range(slot_count):
        if tops[slot] < usable_top:
            tops[slot] = usable_top + slot * pitch
            used_fallback = True

    container_bottom = container.y + container.height
    if max(tops) + config.avg_slot_height > container_bottom:
        raise GeometryError(
            GEOMETRY_CONTAINER_CODE,
            f"chat container height {container.height} cannot hold "
            f"{slot_count} slots of {config.avg_slot_height}px",
        )
    return SlotGeometry(
        slot_tops=tuple(round_half_up(top) for top in tops),
        used_top_fallback=used_fallback,
    )


def validate_container_width(
    container: ContainerGeometry, config: CompositorConfig
) -> None:
    """Ensure the widest possible bubble fits between the side margins."""
    required = config.bubble_style.max_content_width + 2 * config.bubble_margin
    if container.width < required:
        raise GeometryError(
            GEOMETRY_CONTAINER_CODE,
            f"chat container width {container.width} is below {required}px",
        )


def bubble_x(
    sender: Sender,
    bubble: BubbleImage,
    container: ContainerGeometry,
    config: CompositorConfig,
) -> int:
    """Right-align sender A bubbles and left-align sender B bubbles."""
    # Sender A x follows the rendered bubble width, not a fixed nominal width.
    if sender == Sender.A:
        return container.x + container.width - config.bubble_margin - bubble.width
    return container.x + config.bubble_margin


def build_frame_layer(
    chat_frame_path: str | None, container: ContainerGeometry
) -> RenderLayer:
    """Build the full-length chat frame layer scaled to the container."""
    return RenderLayer(
        image_path=chat_frame_path,
        x=container.x,
        y=container.y,
        width=container.width,
        height=container.height,
        start_seconds=0.0,
        end_seconds=None,
    )


def build_render_plan(
    messages: Sequence[Message],
    bubbles: Sequence[BubbleImage],
    intervals: Sequence[DisplayInterval],
    chat_frame_path: str | None,
    container: ContainerGeometry,
    config: CompositorConfig,
    total_duration_seconds: float,
) -> RenderPlan:
    """Combine the frame overlay and scheduled bubbles into a layer stack.

    Layers keep the interval order, so a later interval paints over an
    earlier one wherever their windows overlap.
    """
    if len(bubbles) != len(messages):
        raise ChatVideoPipelineError(
            PLAN_INVALID_CODE,
            f"expected {len(messages)} bubbles, got {len(bubbles)}",
        )
    validate_container_width(container, config)
    slots = compute_slot_geometry(container, config)

    layers: list[RenderLayer] = [build_frame_layer(chat_frame_path, container)]
    for interval in intervals:
        if interval.slot < 0 or interval.slot >= len(slots.slot_tops):
            raise ChatVideoPipelineError(
                PLAN_INVALID_CODE, f"slot out of range: {interval.slot}"
            )
        message = messages[interval.message_index]
        bubble = bubbles[interval.message_index]
        layers.append(
            RenderLayer(
                image_path=bubble.path,
                x=bubble_x(message.sender, bubble, container, config),
                y=slots.slot_tops[interval.slot],
                width=bubble.width,
                height=bubble.height,
                start_seconds=interval.start_seconds,
                end_seconds=interval.end_seconds,
                message_index=interval.message_index,
                slot=interval.slot,
            )
        )

    return RenderPlan(
        container=container,
        layers=tuple(layers),
        total_duration_seconds=total_duration_seconds,
    )
