"""Unit tests for audio timeline construction."""

from __future__ import annotations

import math

import pytest

from domain.chat_video import SCHEDULE_DURATION_CODE, SchedulingError
from service.audio_timeline import build_audio_timeline


def test_start_times_include_pauses_between_messages() -> None:
    """Each message starts after the previous one plus the pause."""
    timeline = build_audio_timeline([1.0, 2.0, 1.5], pause_seconds=0.5)

    assert timeline.start_times == pytest.approx((0.0, 1.5, 4.0))
    assert timeline.total_duration_seconds == pytest.approx(5.5)


def test_no_pause_follows_last_message() -> None:
    """Total duration ends with the last clip, not a trailing pause."""
    timeline = build_audio_timeline([2.0], pause_seconds=0.5)

    assert timeline.start_times == (0.0,)
    assert timeline.total_duration_seconds == pytest.approx(2.0)


def test_empty_conversation_has_zero_duration() -> None:
    """No messages yields an empty timeline."""
    timeline = build_audio_timeline([])

    assert timeline.timings == ()
    assert timeline.total_duration_seconds == 0.0


def test_zero_duration_messages_share_start_offsets() -> None:
    """Zero-length clips still advance the cursor by the pause only."""
    timeline = build_audio_timeline([0.0, 0.0, 1.0], pause_seconds=0.25)

    assert timeline.start_times == pytest.approx((0.0, 0.25, 0.5))
    assert timeline.total_duration_seconds == pytest.approx(1.5)


def test_start_times_are_non_decreasing() -> None:
    """Start times never move backwards."""
    timeline = build_audio_timeline([0.3, 0.0, 2.2, 0.7, 0.0, 1.1])
    starts = timeline.start_times

    assert all(later >= earlier for earlier, later in zip(starts, starts[1:]))
    assert timeline.total_duration_seconds >= starts[-1]


@pytest.mark.parametrize("bad_value", [-1.0, math.nan, math.inf, None])
def test_invalid_duration_names_message(bad_value: object) -> None:
    """Invalid durations fail with the offending message index."""
    with pytest.raises(SchedulingError) as exc_info:
        build_audio_timeline([1.0, bad_value])  # type: ignore[list-item]

    assert exc_info.value.code == SCHEDULE_DURATION_CODE
    assert exc_info.value.message_index == 1
    assert exc_info.value.stage == "schedule"
