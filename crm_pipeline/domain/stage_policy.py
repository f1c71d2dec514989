"""
Stage policy for the sales pipeline.

Pure lookup tables: the ordered stage sequence, the default probability and
display label of each stage, and the rules for moving between stages.
"""
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Tuple, Union

from crm_pipeline.domain.exceptions import UnknownStage


class Stage(str, Enum):
    PROSPECTING = "prospecting"
    QUALIFICATION = "qualification"
    PROPOSAL = "proposal"
    NEGOTIATION = "negotiation"
    CLOSING = "closing"
    LOST = "lost"


# Declaration order of the enum is the pipeline order.
_STAGES: Tuple[Stage, ...] = tuple(Stage)

# The stage a won opportunity ends in, and the stage reachable from anywhere.
CLOSING_STAGE = Stage.CLOSING
LOST_STAGE = Stage.LOST

_DEFAULT_PROBABILITY: Mapping[Stage, int] = MappingProxyType({
    Stage.PROSPECTING: 10,
    Stage.QUALIFICATION: 25,
    Stage.PROPOSAL: 50,
    Stage.NEGOTIATION: 75,
    Stage.CLOSING: 90,
    Stage.LOST: 0,
})

_LABELS: Mapping[Stage, str] = MappingProxyType({
    Stage.PROSPECTING: "Prospecting",
    Stage.QUALIFICATION: "Qualification",
    Stage.PROPOSAL: "Proposal",
    Stage.NEGOTIATION: "Negotiation",
    Stage.CLOSING: "Closing",
    Stage.LOST: "Lost",
})

_INDEX: Mapping[Stage, int] = MappingProxyType({stage: i for i, stage in enumerate(_STAGES)})


def _check_tables() -> None:
    for name, table in (("probability", _DEFAULT_PROBABILITY), ("label", _LABELS)):
        missing = set(_STAGES) - set(table)
        if missing:
            raise RuntimeError(f"Stage {name} table is missing {sorted(s.value for s in missing)}")
    for stage, probability in _DEFAULT_PROBABILITY.items():
        if not 0 <= probability <= 100:
            raise RuntimeError(f"Default probability for {stage.value} is out of range: {probability}")


_check_tables()


def parse_stage(value: Union[Stage, str]) -> Stage:
    """Converts a raw value into a Stage, raising UnknownStage if it is not one."""
    if isinstance(value, Stage):
        return value
    try:
        return Stage(value)
    except ValueError:
        raise UnknownStage(value) from None


def stages() -> Tuple[Stage, ...]:
    """Returns the fixed, ordered sequence of pipeline stages."""
    return _STAGES


def default_probability(stage: Union[Stage, str]) -> int:
    return _DEFAULT_PROBABILITY[parse_stage(stage)]


def label(stage: Union[Stage, str]) -> str:
    return _LABELS[parse_stage(stage)]


def index_of(stage: Union[Stage, str]) -> int:
    return _INDEX[parse_stage(stage)]


def is_terminal(stage: Union[Stage, str]) -> bool:
    return parse_stage(stage) is LOST_STAGE


def can_transition(from_stage: Union[Stage, str], to_stage: Union[Stage, str]) -> bool:
    """
    A move is legal when the target is strictly later in the pipeline, or when
    the target is the lost stage. Nothing leaves the lost stage, and a deal
    never moves back to an earlier active stage.
    """
    current = parse_stage(from_stage)
    target = parse_stage(to_stage)
    if is_terminal(current):
        return False
    if target is LOST_STAGE:
        return True
    return index_of(target) > index_of(current)
