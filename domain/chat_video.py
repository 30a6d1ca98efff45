"""Domain types and parsing for render_chat_video."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import math
import re
from typing import Tuple

INVALID_CONFIG_CODE = "chat_video.input.invalid_config"
INVALID_MESSAGE_CODE = "chat_video.input.invalid_message"
INVALID_SENDER_CODE = "chat_video.input.invalid_sender"
INVALID_COLOR_CODE = "chat_video.input.invalid_color"
INVALID_VOICE_CODE = "chat_video.input.invalid_voice"
INVALID_REQUEST_CODE = "chat_video.input.invalid_request"
INPUT_FILE_CODE = "chat_video.input.file_error"

LAYOUT_FONT_CODE = "chat_video.layout.font_unloadable"
LAYOUT_MEASURE_CODE = "chat_video.layout.measure_failed"
LAYOUT_RASTER_CODE = "chat_video.layout.raster_failed"
SCHEDULE_DURATION_CODE = "chat_video.schedule.invalid_duration"
SCHEDULE_TIMELINE_CODE = "chat_video.schedule.invalid_timeline"
SCHEDULE_PARAMETER_CODE = "chat_video.schedule.invalid_parameter"
GEOMETRY_FRAME_CODE = "chat_video.geometry.invalid_frame"
GEOMETRY_CONTAINER_CODE = "chat_video.geometry.container_too_small"
PLAN_INVALID_CODE = "chat_video.plan.invalid"

HEX_COLOR_PATTERN = re.compile(r"#([0-9a-fA-F]{6})")


class ChatVideoValidationError(ValueError):
    """Validation error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class ChatVideoPipelineError(RuntimeError):
    """Runtime error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class CompositorError(RuntimeError):
    """Job-fatal compositor failure tagged with its stage and message."""

    stage = "compositor"

    def __init__(
        self, code: str, message: str, message_index: int | None = None
    ) -> None:
        if message_index is not None:
            message = f"message {message_index}: {message}"
        super().__init__(message)
        self.code = code
        self.message_index = message_index


class LayoutError(CompositorError):
    """Bubble measurement or rasterization failure."""

    stage = "layout"


class SchedulingError(CompositorError):
    """Invalid timing input for the slot scheduler."""

    stage = "schedule"


class GeometryError(CompositorError):
    """Container geometry too small for the slot layout."""

    stage = "geometry"


class Sender(str, Enum):
    """Conversation participants; A is the local user."""

    A = "person1"
    B = "person2"


SENDER_ALIASES = {
    "a": Sender.A,
    "person1": Sender.A,
    "b": Sender.B,
    "person2": Sender.B,
}


@dataclass(frozen=True)
class Message:
    """A single chat message in conversation order."""

    index: int
    text: str
    sender: Sender

    def __post_init__(self) -> None:
        if self.index < 0:
            raise ChatVideoValidationError(
                INVALID_MESSAGE_CODE, "message index must be non-negative"
            )
        if not isinstance(self.sender, Sender):
            raise ChatVideoValidationError(
                INVALID_SENDER_CODE, "message sender is invalid"
            )


@dataclass(frozen=True)
class AudioTiming:
    """Placement of one message's speech in the concatenated track."""

    message_index: int
    start_seconds: float
    duration_seconds: float

    @property
    def end_seconds(self) -> float:
        return self.start_seconds + self.duration_seconds


@dataclass(frozen=True)
class AudioTimeline:
    """Per-message start times and total conversation duration."""

    timings: Tuple[AudioTiming, ...]
    total_duration_seconds: float

    @property
    def start_times(self) -> Tuple[float, ...]:
        return tuple(timing.start_seconds for timing in self.timings)


@dataclass(frozen=True)
class BubbleImage:
    """Rasterized bubble written to disk."""

    message_index: int
    path: str
    width: int
    height: int
    lines: Tuple[str, ...]


@dataclass(frozen=True)
class DisplayInterval:
    """Time window during which a message occupies a slot."""

    message_index: int
    slot: int
    start_seconds: float
    end_seconds: float


@dataclass(frozen=True)
class VoiceSettings:
    """Voice identifiers for each sender."""

    person1_voice: str
    person2_voice: str

    def __post_init__(self) -> None:
        if not self.person1_voice.strip() or not self.person2_voice.strip():
            raise ChatVideoValidationError(
                INVALID_VOICE_CODE, "voice identifiers must be non-empty"
            )

    def voice_for(self, sender: Sender) -> str:
        """Return the voice identifier for a sender."""
        if sender == Sender.A:
            return self.person1_voice
        return self.person2_voice


@dataclass(frozen=True)
class BubbleStyle:
    """Typography and shape settings for bubble rendering."""

    font_size: int = 24
    line_height: int = 38
    horizontal_padding: int = 35
    vertical_padding: int = 35
    corner_radius: int = 20
    tail_width: int = 15
    tail_height: int = 15
    max_content_width: int = 530
    font_path: str | None = None
    sender_a_fill: Tuple[int, int, int, int] = (0, 122, 255, 255)
    sender_a_text: Tuple[int, int, int, int] = (255, 255, 255, 255)
    sender_b_fill: Tuple[int, int, int, int] = (229, 229, 234, 255)
    sender_b_text: Tuple[int, int, int, int] = (0, 0, 0, 255)

    def __post_init__(self) -> None:
        if self.font_size <= 0:
            raise ChatVideoValidationError(
                INVALID_CONFIG_CODE, "font_size must be positive"
            )
        if self.line_height <= 0:
            raise ChatVideoValidationError(
                INVALID_CONFIG_CODE, "line_height must be positive"
            )
        if self.horizontal_padding < 0 or self.vertical_padding < 0:
            raise ChatVideoValidationError(
                INVALID_CONFIG_CODE, "bubble padding must be non-negative"
            )
        if self.corner_radius < 0:
            raise ChatVideoValidationError(
                INVALID_CONFIG_CODE, "corner_radius must be non-negative"
            )
        if self.tail_width < 0 or self.tail_height < 0:
            raise ChatVideoValidationError(
                INVALID_CONFIG_CODE, "tail dimensions must be non-negative"
            )
        if self.max_content_width <= 0:
            raise ChatVideoValidationError(
                INVALID_CONFIG_CODE, "max_content_width must be positive"
            )
        if self.font_path is not None and not self.font_path.strip():
            raise ChatVideoValidationError(
                INVALID_CONFIG_CODE, "font_path must be non-empty"
            )
        for color in (
            self.sender_a_fill,
            self.sender_a_text,
            self.sender_b_fill,
            self.sender_b_text,
        ):
            if len(color) != 4 or any(channel < 0 or channel > 255 for channel in color):
                raise ChatVideoValidationError(
                    INVALID_COLOR_CODE, f"bubble color is invalid: {color!r}"
                )

    def fill_for(self, sender: Sender) -> Tuple[int, int, int, int]:
        return self.sender_a_fill if sender == Sender.A else self.sender_b_fill

    def text_color_for(self, sender: Sender) -> Tuple[int, int, int, int]:
        return self.sender_a_text if sender == Sender.A else self.sender_b_text


@dataclass(frozen=True)
class CompositorConfig:
    """Immutable tunables for layout and scheduling."""

    visible_slots: int = 3
    pause_seconds: float = 0.5
    sync_offset_seconds: float = -0.05
    min_display_seconds: float = 0.03
    avg_slot_height: int = 115
    slot_spacing: int = 30
    slot_bottom_padding: int = 30
    bubble_margin: int = 30
    container_width_ratio: float = 0.90
    container_height_ratio: float = 0.55
    container_top_ratio: float = 0.03
    header_ratio: float = 0.18
    footer_ratio: float = 0.15
    bubble_style: BubbleStyle = field(default_factory=BubbleStyle)

    def __post_init__(self) -> None:
        if self.visible_slots <= 0:
            raise ChatVideoValidationError(
                INVALID_CONFIG_CODE, "visible_slots must be positive"
            )
        if not math.isfinite(self.pause_seconds) or self.pause_seconds < 0:
            raise ChatVideoValidationError(
                INVALID_CONFIG_CODE, "pause_seconds must be non-negative"
            )
        if not math.isfinite(self.sync_offset_seconds):
            raise ChatVideoValidationError(
                INVALID_CONFIG_CODE, "sync_offset_seconds must be finite"
            )
        if not math.isfinite(self.min_display_seconds) or self.min_display_seconds <= 0:
            raise ChatVideoValidationError(
                INVALID_CONFIG_CODE, "min_display_seconds must be positive"
            )
        if self.avg_slot_height <= 0:
            raise ChatVideoValidationError(
                INVALID_CONFIG_CODE, "avg_slot_height must be positive"
            )
        if self.slot_spacing < 0 or self.slot_bottom_padding < 0:
            raise ChatVideoValidationError(
                INVALID_CONFIG_CODE, "slot spacing must be non-negative"
            )
        if self.bubble_margin < 0:
            raise ChatVideoValidationError(
                INVALID_CONFIG_CODE, "bubble_margin must be non-negative"
            )
        for label, ratio in (
            ("container_width_ratio", self.container_width_ratio),
            ("container_height_ratio", self.container_height_ratio),
        ):
            if ratio <= 0 or ratio > 1:
                raise ChatVideoValidationError(
                    INVALID_CONFIG_CODE, f"{label} must be in (0, 1]"
                )
        if self.container_top_ratio < 0 or self.container_top_ratio >= 1:
            raise ChatVideoValidationError(
                INVALID_CONFIG_CODE, "container_top_ratio must be in [0, 1)"
            )
        if (
            self.header_ratio < 0
            or self.footer_ratio < 0
            or self.header_ratio + self.footer_ratio >= 1
        ):
            raise ChatVideoValidationError(
                INVALID_CONFIG_CODE, "header and footer ratios leave no chat area"
            )


def parse_sender(value: object) -> Sender:
    """Parse a sender token (person1/person2 or A/B)."""
    if not isinstance(value, str):
        raise ChatVideoValidationError(
            INVALID_SENDER_CODE, f"invalid sender: {value!r}"
        )
    sender = SENDER_ALIASES.get(value.strip().lower())
    if sender is None:
        raise ChatVideoValidationError(
            INVALID_SENDER_CODE, f"invalid sender: {value!r}"
        )
    return sender


def parse_messages(payload: object) -> Tuple[Message, ...]:
    """Parse a list of {text, sender} objects into ordered messages."""
    if not isinstance(payload, list):
        raise ChatVideoValidationError(
            INVALID_MESSAGE_CODE, "messages must be a list"
        )
    messages: list[Message] = []
    for index, item in enumerate(payload):
        if not isinstance(item, dict):
            raise ChatVideoValidationError(
                INVALID_MESSAGE_CODE, f"message {index} must be an object"
            )
        text = item.get("text")
        if not isinstance(text, str):
            raise ChatVideoValidationError(
                INVALID_MESSAGE_CODE, f"message {index} text must be a string"
            )
        messages.append(
            Message(index=index, text=text, sender=parse_sender(item.get("sender")))
        )
    return tuple(messages)


def parse_voice_settings(payload: object) -> VoiceSettings:
    """Parse {person1Voice, person2Voice} into VoiceSettings."""
    if not isinstance(payload, dict):
        raise ChatVideoValidationError(
            INVALID_VOICE_CODE, "voiceSettings must be an object"
        )
    person1_voice = payload.get("person1Voice")
    person2_voice = payload.get("person2Voice")
    if not isinstance(person1_voice, str) or not isinstance(person2_voice, str):
        raise ChatVideoValidationError(
            INVALID_VOICE_CODE, "person1Voice and person2Voice must be strings"
        )
    return VoiceSettings(person1_voice=person1_voice, person2_voice=person2_voice)


def parse_hex_color_to_rgba(color_value: str) -> Tuple[int, int, int, int]:
    """Parse a #RRGGBB token into an opaque RGBA tuple."""
    match_value = HEX_COLOR_PATTERN.fullmatch(color_value.strip())
    if not match_value:
        raise ChatVideoValidationError(
            INVALID_COLOR_CODE, f"invalid color value: {color_value!r}"
        )
    rgb_hex = match_value.group(1)
    return (int(rgb_hex[0:2], 16), int(rgb_hex[2:4], 16), int(rgb_hex[4:6], 16), 255)


def parse_durations(raw_value: str, expected_count: int) -> Tuple[float, ...]:
    """Parse a comma-delimited list of per-message durations."""
    parts = [part.strip() for part in raw_value.split(",") if part.strip()]
    if len(parts) != expected_count:
        raise ChatVideoValidationError(
            INVALID_REQUEST_CODE,
            f"expected {expected_count} durations, got {len(parts)}",
        )
    durations: list[float] = []
    for part in parts:
        try:
            durations.append(float(part))
        except ValueError as exc:
            raise ChatVideoValidationError(
                INVALID_REQUEST_CODE, f"invalid duration: {part!r}"
            ) from exc
    return tuple(durations)
