"""Audio timeline construction for render_chat_video."""

from __future__ import annotations

import math
from typing import Sequence

from domain.chat_video import (
    SCHEDULE_DURATION_CODE,
    SCHEDULE_PARAMETER_CODE,
    AudioTiming,
    AudioTimeline,
    SchedulingError,
)

DEFAULT_PAUSE_SECONDS = 0.5


def build_audio_timeline(
    durations: Sequence[float], pause_seconds: float = DEFAULT_PAUSE_SECONDS
) -> AudioTimeline:
    """Place each message's speech on the concatenated audio track.

    A pause separates consecutive messages; none follows the last one.
    """
    if not math.isfinite(pause_seconds) or pause_seconds < 0:
        raise SchedulingError(
            SCHEDULE_PARAMETER_CODE, "pause must be a non-negative number"
        )

    timings: list[AudioTiming] = []
    cursor = 0.0
    for index, duration in enumerate(durations):
        if duration is None:
            raise SchedulingError(
                SCHEDULE_DURATION_CODE, "audio duration is missing", index
            )
        duration_value = float(duration)
        if not math.isfinite(duration_value) or duration_value < 0:
            raise SchedulingError(
                SCHEDULE_DURATION_CODE,
                f"audio duration must be non-negative: {duration!r}",
                index,
            )
        if index > 0:
            cursor += pause_seconds
        timings.append(
            AudioTiming(
                message_index=index,
                start_seconds=cursor,
                duration_seconds=duration_value,
            )
        )
        cursor += duration_value

    if not timings:
        return AudioTimeline(timings=(), total_duration_seconds=0.0)
    return AudioTimeline(
        timings=tuple(timings), total_duration_seconds=timings[-1].end_seconds
    )
