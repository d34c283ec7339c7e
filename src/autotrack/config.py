"""Configuration models and helpers for the tracker."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


@dataclass(slots=True)
class TrackerSettings:
    """Runtime configuration for the coordinator and its observers."""

    minimum_switch_duration: timedelta = timedelta(seconds=30)
    checkpoint_interval: timedelta = timedelta(seconds=60)
    elapsed_tick_interval: timedelta = timedelta(seconds=1)
    retention_days: int = 90
    sample_interval: timedelta = timedelta(seconds=5)
    idle_threshold: timedelta = timedelta(minutes=5)
    sleep_gap: timedelta = timedelta(minutes=2)

    @classmethod
    def from_intervals(
        cls,
        min_switch_seconds: float = 30.0,
        checkpoint_seconds: float = 60.0,
        idle_minutes: float = 5.0,
        sample_seconds: float = 5.0,
        retention_days: int = 90,
        sleep_gap_minutes: float | None = None,
    ) -> "TrackerSettings":
        sleep_gap = (
            sleep_gap_minutes
            if sleep_gap_minutes is not None
            else max(idle_minutes, 2.0)
        )
        return cls(
            minimum_switch_duration=timedelta(seconds=min_switch_seconds),
            checkpoint_interval=timedelta(seconds=checkpoint_seconds),
            retention_days=retention_days,
            sample_interval=timedelta(seconds=sample_seconds),
            idle_threshold=timedelta(minutes=idle_minutes),
            sleep_gap=timedelta(minutes=sleep_gap),
        )
