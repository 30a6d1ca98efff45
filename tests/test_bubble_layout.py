"""Tests for chat bubble wrapping and rasterization."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest
from PIL import Image

from domain.chat_video import LAYOUT_FONT_CODE, BubbleStyle, LayoutError, Sender
from service.bubble_layout import (
    BubbleRenderer,
    measure_bubble,
    render_bubbles,
    wrap_text,
)


def char_count(text_value: str) -> float:
    return float(len(text_value))


def test_wrap_text_breaks_greedily() -> None:
    """Words are packed onto a line until the next one would overflow."""
    lines = wrap_text("aaa bbb ccc ddd", 10, char_count)

    assert lines == ("aaa bbb", "ccc ddd")


def test_wrap_text_collapses_whitespace() -> None:
    """Runs of whitespace act as a single separator."""
    assert wrap_text("  one   two\tthree  ", 100, char_count) == ("one two three",)


def test_wrap_text_keeps_overlong_word_on_its_own_line() -> None:
    """A word wider than the limit is never split."""
    lines = wrap_text("a supercalifragilistic b", 5, char_count)

    assert lines == ("a", "supercalifragilistic", "b")


def test_wrap_text_empty_input_yields_one_empty_line() -> None:
    """Empty text still produces one line."""
    assert wrap_text("", 10, char_count) == ("",)
    assert wrap_text("   ", 10, char_count) == ("",)


def test_wrap_text_is_stable_when_rewrapped() -> None:
    """Wrapping the joined output again gives the same lines."""
    text_value = "the quick brown fox jumps over the lazy dog again and again"
    lines = wrap_text(text_value, 16, char_count)

    assert wrap_text(" ".join(lines), 16, char_count) == lines
    for line in lines:
        assert char_count(line) <= 16


def test_measure_bubble_dimensions() -> None:
    """Width hugs the text plus padding; the tail adds to the height."""
    style = BubbleStyle()
    geometry = measure_bubble("hello", style, char_count)

    assert geometry.lines == ("hello",)
    assert geometry.body_width == 5 + 2 * style.horizontal_padding
    assert geometry.body_height == style.line_height + 2 * style.vertical_padding
    assert geometry.image_height == geometry.body_height + style.tail_height


def test_measure_bubble_caps_width() -> None:
    """Bubbles never exceed the maximum content width."""
    style = BubbleStyle(max_content_width=100)
    geometry = measure_bubble("x" * 90, style, char_count)

    assert geometry.body_width == 100
    assert geometry.lines == ("x" * 90,)


def test_measure_bubble_multiline_height() -> None:
    """Height grows by one line height per wrapped line."""
    style = BubbleStyle()
    geometry = measure_bubble("aa bb cc", style, char_count, max_content_width=4)

    assert geometry.lines == ("aa", "bb", "cc")
    assert geometry.body_height == 3 * style.line_height + 2 * style.vertical_padding


def opaque_pixels(image: Image.Image, columns: range, rows: range) -> int:
    alpha = image.getchannel("A")
    return sum(1 for x in columns for y in rows if alpha.getpixel((x, y)) > 0)


@pytest.mark.parametrize("sender", [Sender.A, Sender.B])
def test_render_writes_png_with_reported_size(tmp_path: Path, sender: Sender) -> None:
    """The rendered file matches the returned dimensions and fill color."""
    style = BubbleStyle()
    renderer = BubbleRenderer.from_style(style)
    output_path = tmp_path / "bubble.png"

    bubble = renderer.render(0, "Hey, are you coming tonight?", sender, str(output_path))

    assert output_path.exists()
    with Image.open(output_path) as image:
        assert image.size == (bubble.width, bubble.height)
        assert image.mode == "RGBA"
        assert image.getpixel((bubble.width // 2, 3)) == style.fill_for(sender)
    assert bubble.width <= style.max_content_width
    assert bubble.lines == ("Hey, are you coming tonight?",)


@pytest.mark.parametrize(
    ("sender", "heavier_side"), [(Sender.A, "right"), (Sender.B, "left")]
)
def test_tail_hangs_on_sender_side(
    tmp_path: Path, sender: Sender, heavier_side: str
) -> None:
    """Sender A's tail points right, sender B's points left."""
    style = BubbleStyle()
    renderer = BubbleRenderer.from_style(style)
    bubble = renderer.render(0, "ok then", sender, str(tmp_path / "tail.png"))
    body_height = bubble.height - style.tail_height

    with Image.open(bubble.path) as image:
        tail_rows = range(body_height, bubble.height)
        half = bubble.width // 2
        left = opaque_pixels(image, range(0, half), tail_rows)
        right = opaque_pixels(image, range(half, bubble.width), tail_rows)

    if heavier_side == "right":
        assert right > 0 and left == 0
    else:
        assert left > 0 and right == 0


def test_long_text_wraps_into_multiple_lines(tmp_path: Path) -> None:
    """Long messages wrap within the content width."""
    renderer = BubbleRenderer.from_style(BubbleStyle())
    text_value = " ".join(["conversation"] * 20)

    bubble = renderer.render(3, text_value, Sender.B, str(tmp_path / "long.png"))

    assert len(bubble.lines) > 1
    assert " ".join(bubble.lines) == text_value
    assert bubble.width <= BubbleStyle().max_content_width
    assert bubble.message_index == 3


def test_empty_text_renders_padding_only_bubble(tmp_path: Path) -> None:
    """Empty messages still produce a bubble."""
    style = BubbleStyle()
    renderer = BubbleRenderer.from_style(style)

    bubble = renderer.render(0, "", Sender.A, str(tmp_path / "empty.png"))

    assert bubble.lines == ("",)
    assert bubble.width == 2 * style.horizontal_padding
    assert bubble.height == (
        style.line_height + 2 * style.vertical_padding + style.tail_height
    )


def test_render_bubbles_names_files_by_index(tmp_path: Path) -> None:
    """Each message gets its own bubble file."""
    renderer = BubbleRenderer.from_style(BubbleStyle())

    bubbles = render_bubbles(
        renderer, ["first", "second"], [Sender.A, Sender.B], str(tmp_path)
    )

    assert [Path(bubble.path).name for bubble in bubbles] == [
        "bubble_0.png",
        "bubble_1.png",
    ]
    assert [bubble.message_index for bubble in bubbles] == [0, 1]


def test_missing_font_raises_layout_error(tmp_path: Path) -> None:
    """An unloadable font fails in the layout stage."""
    style = replace(BubbleStyle(), font_path=str(tmp_path / "missing.ttf"))

    with pytest.raises(LayoutError) as exc_info:
        BubbleRenderer.from_style(style)

    assert exc_info.value.code == LAYOUT_FONT_CODE
    assert exc_info.value.stage == "layout"
