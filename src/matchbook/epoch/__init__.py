"""Epoch time-window arithmetic."""

from matchbook.epoch.clock import EpochClock, EpochPhase

__all__ = ["EpochClock", "EpochPhase"]
