"""Rolling-window slot scheduling for chat bubbles.

The most recent ``visible_slots`` messages are stacked on screen, newest at
the bottom slot. Each audio start is a reveal event: when message ``k`` is
revealed it takes the bottom slot and every visible message moves up one
slot. Message ``m`` therefore sits in slot ``s`` while the bottom slot is
held by its trigger message ``m + (visible_slots - 1 - s)``, from that
trigger's reveal until the next reveal, or the end of the conversation.
"""

from __future__ import annotations

import math
from typing import Sequence, Tuple

from domain.chat_video import (
    SCHEDULE_PARAMETER_CODE,
    SCHEDULE_TIMELINE_CODE,
    DisplayInterval,
    SchedulingError,
)

DEFAULT_VISIBLE_SLOTS = 3
DEFAULT_SYNC_OFFSET_SECONDS = -0.05
DEFAULT_MIN_DISPLAY_SECONDS = 0.03


def validate_schedule_inputs(
    start_times: Sequence[float],
    total_duration: float,
    visible_slots: int,
    sync_offset: float,
    min_display: float,
) -> None:
    """Reject timelines the scheduler cannot turn into renderable windows."""
    if visible_slots <= 0:
        raise SchedulingError(
            SCHEDULE_PARAMETER_CODE, "visible slot count must be positive"
        )
    if not math.isfinite(sync_offset):
        raise SchedulingError(SCHEDULE_PARAMETER_CODE, "sync offset must be finite")
    if not math.isfinite(min_display) or min_display <= 0:
        raise SchedulingError(
            SCHEDULE_PARAMETER_CODE, "minimum display duration must be positive"
        )
    if not math.isfinite(total_duration) or total_duration < 0:
        raise SchedulingError(
            SCHEDULE_TIMELINE_CODE, "total duration must be non-negative"
        )

    previous = 0.0
    for index, start in enumerate(start_times):
        if start is None or not math.isfinite(start) or start < 0:
            raise SchedulingError(
                SCHEDULE_TIMELINE_CODE, f"invalid start time: {start!r}", index
            )
        if start < previous:
            raise SchedulingError(
                SCHEDULE_TIMELINE_CODE, "start times must be non-decreasing", index
            )
        previous = start
    if start_times and total_duration < start_times[-1]:
        raise SchedulingError(
            SCHEDULE_TIMELINE_CODE, "total duration ends before the last message"
        )


def trigger_for_slot(message_index: int, slot: int, visible_slots: int) -> int:
    """Return the index of the message holding the bottom slot."""
    return message_index + (visible_slots - 1 - slot)


def schedule_display_intervals(
    start_times: Sequence[float],
    total_duration: float,
    visible_slots: int = DEFAULT_VISIBLE_SLOTS,
    sync_offset: float = DEFAULT_SYNC_OFFSET_SECONDS,
    min_display: float = DEFAULT_MIN_DISPLAY_SECONDS,
) -> Tuple[DisplayInterval, ...]:
    """Schedule every (message, slot) occupancy window.

    Intervals are emitted message by message, top slot first. Empty or
    inverted windows are stretched to ``min_display``; positive windows
    are kept as computed.
    """
    validate_schedule_inputs(
        start_times, total_duration, visible_slots, sync_offset, min_display
    )
    message_count = len(start_times)
    intervals: list[DisplayInterval] = []

    for message_index in range(message_count):
        for slot in range(visible_slots):
            trigger = trigger_for_slot(message_index, slot, visible_slots)
            if trigger < 0 or trigger >= message_count:
                continue

            start = max(0.0, start_times[trigger] + sync_offset)
            next_trigger = trigger + 1
            if next_trigger < message_count:
                end = start_times[next_trigger] + sync_offset
            else:
                end = total_duration
            if end <= start:
                end = start + min_display

            intervals.append(
                DisplayInterval(
                    message_index=message_index,
                    slot=slot,
                    start_seconds=start,
                    end_seconds=end,
                )
            )

    return tuple(intervals)
