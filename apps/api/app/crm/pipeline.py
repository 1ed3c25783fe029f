"""Fixed sales pipeline: ordered stages, win-probability weights and transitions.

A deal moves forward one stage at a time and leaves the pipeline only by being
marked won or lost. Both outcomes are terminal.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Literal

DealStage = Literal["PROSPECTING", "QUALIFICATION", "PROPOSAL", "NEGOTIATION"]
DealOutcome = Literal["OPEN", "WON", "LOST"]

STAGE_ORDER: tuple[str, ...] = ("PROSPECTING", "QUALIFICATION", "PROPOSAL", "NEGOTIATION")

# percent; must increase toward close
STAGE_WEIGHTS: dict[str, int] = {
    "PROSPECTING": 10,
    "QUALIFICATION": 25,
    "PROPOSAL": 50,
    "NEGOTIATION": 75,
}

OUTCOME_OPEN = "OPEN"
OUTCOME_WON = "WON"
OUTCOME_LOST = "LOST"
TERMINAL_OUTCOMES = frozenset({OUTCOME_WON, OUTCOME_LOST})

WON_PROBABILITY = 100
LOST_PROBABILITY = 0


def is_valid_stage(stage: str) -> bool:
    return stage in STAGE_WEIGHTS


def is_terminal(outcome: str) -> bool:
    return outcome in TERMINAL_OUTCOMES


def stage_index(stage: str) -> int:
    return STAGE_ORDER.index(stage)


def next_stage(stage: str) -> str | None:
    """Return the stage after ``stage``, or ``None`` at the final pre-close stage."""
    position = stage_index(stage)
    if position + 1 >= len(STAGE_ORDER):
        return None
    return STAGE_ORDER[position + 1]


def stage_weight(stage: str) -> int:
    return STAGE_WEIGHTS[stage]


def weighted_value(value: Decimal, stage: str) -> Decimal:
    return value * Decimal(STAGE_WEIGHTS[stage]) / Decimal(100)
