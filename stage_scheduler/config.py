"""Tuning parameters for machine selection and queue handling."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Mapping


@dataclass(slots=True)
class ScoringWeights:
    """Weights of the machine selection score.

    score = machine_priority * priority
            + same_part_bonus                  (last part equals this part)
            - setup_hours * changeover hours   (recorded changeover)
            - queued_stage * stages waiting on the machine
            - release_hours * hours until the machine frees up
    """

    machine_priority: float = 10.0
    same_part_bonus: float = 50.0
    setup_hours: float = 5.0
    queued_stage: float = 2.0
    release_hours: float = 3.0


@dataclass(slots=True)
class SchedulerOptions:
    """Configuration values controlling the scheduling engine."""

    weights: ScoringWeights = field(default_factory=ScoringWeights)
    min_remaining_minutes: float = 5.0
    max_priority: int = 10
    setup_priority_boost: int = 1
    reassign_margin: float = 0.0
    auto_schedule_lots: bool = True
    auto_start_ready_stages: bool = False
    overdue_grace_hours: float = 2.0

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "SchedulerOptions":
        """Build options from a plain mapping, ignoring unknown keys."""

        known = {item.name for item in fields(cls)}
        kwargs = {key: value for key, value in values.items() if key in known}
        weights = kwargs.pop("weights", None)
        if isinstance(weights, Mapping):
            weight_names = {item.name for item in fields(ScoringWeights)}
            kwargs["weights"] = ScoringWeights(
                **{key: float(value) for key, value in weights.items() if key in weight_names}
            )
        elif isinstance(weights, ScoringWeights):
            kwargs["weights"] = weights
        return cls(**kwargs)


__all__ = ["ScoringWeights", "SchedulerOptions"]
