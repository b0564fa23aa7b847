"""Fixed build/break cycle used to describe what the stream should be showing."""

from datetime import datetime, timezone
from typing import Optional

from ..domain.models import Scene, ScheduleInfo, SchedulePhase

PHASE_SCENES = {
    SchedulePhase.BUILD: Scene.WATCH,
    SchedulePhase.BREAK: Scene.VJ,
}


def compute_schedule(
    build_minutes: int = 120,
    break_minutes: int = 60,
    now: Optional[datetime] = None,
) -> ScheduleInfo:
    """Locate ``now`` in the repeating BUILD then BREAK cycle.

    The cycle is anchored at UTC midnight, so every instance of the service
    reports the same phase for the same wall-clock time.

    Args:
        build_minutes: Length of the BUILD phase
        break_minutes: Length of the BREAK phase
        now: Point in time to evaluate (defaults to the current UTC time)

    Returns:
        Derived schedule position
    """
    if build_minutes <= 0 or break_minutes <= 0:
        raise ValueError("Schedule phases must be at least one minute long")

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)

    minutes_since_midnight = now.hour * 60 + now.minute
    position = minutes_since_midnight % (build_minutes + break_minutes)

    if position < build_minutes:
        phase = SchedulePhase.BUILD
        minutes_into_phase = position
        minutes_remaining = build_minutes - position
        next_phase = SchedulePhase.BREAK
    else:
        phase = SchedulePhase.BREAK
        minutes_into_phase = position - build_minutes
        minutes_remaining = break_minutes - minutes_into_phase
        next_phase = SchedulePhase.BUILD

    hours, minutes = divmod(minutes_remaining, 60)
    eta = f"{hours}h {minutes}m" if hours else f"{minutes}m"

    return ScheduleInfo(
        current_phase=phase,
        scene=PHASE_SCENES[phase],
        minutes_into_phase=minutes_into_phase,
        minutes_remaining=minutes_remaining,
        next_switch=f"{next_phase.value.upper()} in {eta}",
    )
