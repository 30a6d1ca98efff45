"""Chat bubble layout and rasterization."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from typing import Callable, Sequence, Tuple

from PIL import Image, ImageDraw, ImageFont

from domain.chat_video import (
    LAYOUT_FONT_CODE,
    LAYOUT_MEASURE_CODE,
    LAYOUT_RASTER_CODE,
    BubbleImage,
    BubbleStyle,
    LayoutError,
    Sender,
)

LOGGER = logging.getLogger("chat_video")

MeasureText = Callable[[str], float]


@dataclass(frozen=True)
class BubbleGeometry:
    """Measured bubble dimensions for a message."""

    lines: Tuple[str, ...]
    body_width: int
    body_height: int
    image_height: int


def wrap_text(text_value: str, max_width: float, measure: MeasureText) -> Tuple[str, ...]:
    """Greedily wrap words so each line fits ``max_width`` where possible.

    A word wider than ``max_width`` is placed on its own line. Empty text
    yields a single empty line.
    """
    words = text_value.split()
    if not words:
        return ("",)

    lines: list[str] = []
    current_line = words[0]
    for word in words[1:]:
        candidate = f"{current_line} {word}"
        if measure(candidate) <= max_width:
            current_line = candidate
        else:
            lines.append(current_line)
            current_line = word
    lines.append(current_line)
    return tuple(lines)


def load_bubble_font(style: BubbleStyle) -> ImageFont.FreeTypeFont:
    """Load the bubble font, falling back to Pillow's bundled font."""
    try:
        if style.font_path is None:
            return ImageFont.load_default(size=style.font_size)
        return ImageFont.truetype(
            style.font_path, size=style.font_size, layout_engine=ImageFont.Layout.BASIC
        )
    except (OSError, ValueError) as exc:
        raise LayoutError(
            LAYOUT_FONT_CODE,
            f"failed to load font {style.font_path or '<default>'} "
            f"at size {style.font_size}",
        ) from exc


def build_text_measure(font: ImageFont.FreeTypeFont) -> MeasureText:
    """Return a width measure bound to a font."""
    layout_draw = ImageDraw.Draw(Image.new("RGBA", (1, 1)))

    def measure(text_value: str) -> float:
        if not text_value:
            return 0.0
        return float(layout_draw.textlength(text_value, font=font))

    return measure


def measure_bubble(
    text_value: str,
    style: BubbleStyle,
    measure: MeasureText,
    max_content_width: int | None = None,
) -> BubbleGeometry:
    """Compute wrapped lines and bubble dimensions without drawing."""
    content_width = style.max_content_width if max_content_width is None else max_content_width
    lines = wrap_text(text_value, content_width, measure)
    widest_line = max(measure(line) for line in lines)
    body_width = min(
        content_width, int(round(widest_line)) + 2 * style.horizontal_padding
    )
    body_height = len(lines) * style.line_height + 2 * style.vertical_padding
    return BubbleGeometry(
        lines=lines,
        body_width=max(1, body_width),
        body_height=body_height,
        image_height=body_height + style.tail_height,
    )


def tail_polygon(
    sender: Sender, geometry: BubbleGeometry, style: BubbleStyle
) -> Tuple[Tuple[int, int], ...]:
    """Return the triangle hanging below the bubble's bottom corner."""
    base_y = geometry.body_height - 1
    tip_y = geometry.image_height - 1
    inset = min(style.corner_radius, max(0, geometry.body_width - style.tail_width))
    if sender == Sender.A:
        right = geometry.body_width - 1
        return (
            (right - inset - style.tail_width, base_y),
            (right - inset, base_y),
            (right, tip_y),
        )
    return (
        (inset + style.tail_width, base_y),
        (inset, base_y),
        (0, tip_y),
    )


def draw_bubble(
    geometry: BubbleGeometry,
    sender: Sender,
    style: BubbleStyle,
    font: ImageFont.FreeTypeFont,
) -> Image.Image:
    """Draw the bubble body, tail and text onto a transparent canvas."""
    image = Image.new(
        "RGBA", (geometry.body_width, geometry.image_height), (0, 0, 0, 0)
    )
    draw = ImageDraw.Draw(image)
    fill = style.fill_for(sender)
    radius = min(style.corner_radius, geometry.body_width // 2, geometry.body_height // 2)
    draw.rounded_rectangle(
        (0, 0, geometry.body_width - 1, geometry.body_height - 1),
        radius=radius,
        fill=fill,
    )
    if style.tail_height > 0 and style.tail_width > 0:
        draw.polygon(tail_polygon(sender, geometry, style), fill=fill)

    text_color = style.text_color_for(sender)
    baseline_shift = (style.line_height - style.font_size) / 2.0
    for line_index, line in enumerate(geometry.lines):
        if not line:
            continue
        draw.text(
            (
                style.horizontal_padding,
                style.vertical_padding + line_index * style.line_height + baseline_shift,
            ),
            line,
            font=font,
            fill=text_color,
            anchor="la",
        )
    return image


@dataclass
class BubbleRenderer:
    """Renders bubbles for one job with a shared font."""

    style: BubbleStyle
    font: ImageFont.FreeTypeFont
    measure: MeasureText

    @classmethod
    def from_style(cls, style: BubbleStyle) -> "BubbleRenderer":
        font = load_bubble_font(style)
        return cls(style=style, font=font, measure=build_text_measure(font))

    def render(
        self,
        message_index: int,
        text_value: str,
        sender: Sender,
        output_path: str,
        max_content_width: int | None = None,
    ) -> BubbleImage:
        """Rasterize a bubble to ``output_path`` and report its size."""
        try:
            geometry = measure_bubble(
                text_value, self.style, self.measure, max_content_width
            )
        except (OSError, ValueError) as exc:
            raise LayoutError(
                LAYOUT_MEASURE_CODE, f"text measurement failed: {exc}", message_index
            ) from exc

        try:
            image = draw_bubble(geometry, sender, self.style, self.font)
            image.save(output_path, format="PNG")
        except (OSError, ValueError) as exc:
            raise LayoutError(
                LAYOUT_RASTER_CODE, f"bubble rasterization failed: {exc}", message_index
            ) from exc

        width, height = image.size
        LOGGER.debug(
            "chat_video.layout.bubble index=%s lines=%s size=%sx%s",
            message_index,
            len(geometry.lines),
            width,
            height,
        )
        return BubbleImage(
            message_index=message_index,
            path=output_path,
            width=width,
            height=height,
            lines=geometry.lines,
        )


def render_bubbles(
    renderer: BubbleRenderer,
    texts: Sequence[str],
    senders: Sequence[Sender],
    output_dir: str,
) -> Tuple[BubbleImage, ...]:
    """Render one bubble per message as bubble_<index>.png."""
    bubbles: list[BubbleImage] = []
    for index, (text_value, sender) in enumerate(zip(texts, senders)):
        output_path = os.path.join(output_dir, f"bubble_{index}.png")
        bubbles.append(renderer.render(index, text_value, sender, output_path))
    return tuple(bubbles)
