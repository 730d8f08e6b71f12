"""Pressure tiers and the idle-kill threshold they select."""

from dataclasses import dataclass

from devmon.models import PressureTier

# Pressure must drop this far below the emergency threshold before the alarm re-arms
ALARM_HYSTERESIS = 5


@dataclass(slots=True, frozen=True)
class ThresholdDecision:
    """Tier and effective idle threshold for one cycle."""

    tier: PressureTier
    idle_threshold_seconds: int


def classify_tier(pressure_percent: int, warn_threshold: int, emergency_threshold: int) -> PressureTier:
    """Bucket a pressure percentage."""
    if pressure_percent < warn_threshold:
        return PressureTier.OK
    if pressure_percent < emergency_threshold:
        return PressureTier.WARN
    return PressureTier.CRITICAL


def select_threshold(
    pressure_percent: int,
    warn_threshold: int,
    emergency_threshold: int,
    idle_normal: int,
    idle_emergency: int,
) -> ThresholdDecision:
    """
    Map memory pressure to a tier and the idle time after which orphans die.

    Only CRITICAL switches to the emergency threshold; WARN is informational.
    """
    tier = classify_tier(pressure_percent, warn_threshold, emergency_threshold)
    idle = idle_emergency if tier is PressureTier.CRITICAL else idle_normal
    return ThresholdDecision(tier=tier, idle_threshold_seconds=idle)


def should_kill(age_seconds: int | None, decision: ThresholdDecision) -> bool:
    """Whether an orphan of the given age has been idle long enough."""
    return age_seconds is not None and age_seconds >= decision.idle_threshold_seconds


class PressureAlarm:
    """
    One-shot latch for high-pressure notifications.

    Fires the first time pressure reaches the emergency threshold and stays
    quiet until pressure falls below ``emergency - ALARM_HYSTERESIS``.
    Pass ``fired=True`` to restore a latch persisted by an earlier process.
    """

    def __init__(self, emergency_threshold: int, enabled: bool = True, fired: bool = False) -> None:
        self._emergency = emergency_threshold
        self._enabled = enabled
        self._fired = fired

    @property
    def fired(self) -> bool:
        """Whether the alarm is latched."""
        return self._fired

    def update(self, pressure_percent: int) -> bool:
        """Feed a new reading; return True when a notification should go out."""
        if pressure_percent < self._emergency - ALARM_HYSTERESIS:
            self._fired = False
            return False
        if pressure_percent >= self._emergency and not self._fired:
            self._fired = True
            return self._enabled
        return False
