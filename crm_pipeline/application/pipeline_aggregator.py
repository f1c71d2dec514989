from collections import defaultdict
from decimal import Decimal
from typing import Dict, Iterable, List

from crm_pipeline.domain import stage_policy
from crm_pipeline.domain.models import (
    Opportunity,
    PipelineReport,
    PipelineStats,
    StageSummary,
    Status,
    TWO_PLACES,
)
from crm_pipeline.domain.stage_policy import Stage

ZERO = Decimal("0")


def weighted_value(opportunities: Iterable[Opportunity]) -> Decimal:
    """
    Risk-adjusted total: the sum of value * probability / 100.

    Uses each deal's current probability, which may differ from its stage
    default. Summed in Decimal so many small products do not drift.
    """
    return sum((opp.value * opp.probability / 100 for opp in opportunities), ZERO)


def stage_distribution(opportunities: Iterable[Opportunity]) -> List[StageSummary]:
    """
    Groups opportunities by stage in pipeline order.
    Every stage appears exactly once, with zero counts when it has no deals.
    """
    groups: Dict[Stage, List[Opportunity]] = defaultdict(list)
    for opp in opportunities:
        groups[opp.stage].append(opp)

    summaries = []
    for stage in stage_policy.stages():
        group = groups.get(stage, [])
        if group:
            average = (Decimal(sum(opp.probability for opp in group)) / len(group)).quantize(TWO_PLACES)
        else:
            average = ZERO
        summaries.append(
            StageSummary(
                stage=stage,
                label=stage_policy.label(stage),
                count=len(group),
                total_value=sum((opp.value for opp in group), ZERO),
                average_probability=average,
            )
        )
    return summaries


def summarize_pipeline(opportunities: Iterable[Opportunity]) -> PipelineReport:
    """Builds the pipeline report over the active opportunities in the working set."""
    active = [opp for opp in opportunities if opp.status is Status.ACTIVE]
    return PipelineReport(
        stages=stage_distribution(active),
        total_count=len(active),
        total_value=sum((opp.value for opp in active), ZERO),
        weighted_value=weighted_value(active),
    )


def compute_stats(opportunities: Iterable[Opportunity]) -> PipelineStats:
    partitions: Dict[Status, List[Opportunity]] = {status: [] for status in Status}
    for opp in opportunities:
        partitions[opp.status].append(opp)

    active = partitions[Status.ACTIVE]
    won = partitions[Status.WON]
    lost = partitions[Status.LOST]
    total_count = len(active) + len(won) + len(lost)

    def _value(items: List[Opportunity]) -> Decimal:
        return sum((opp.value for opp in items), ZERO)

    total_value = _value(active) + _value(won) + _value(lost)
    closed = len(won) + len(lost)

    return PipelineStats(
        total_count=total_count,
        active_count=len(active),
        won_count=len(won),
        lost_count=len(lost),
        total_value=total_value,
        active_value=_value(active),
        won_value=_value(won),
        lost_value=_value(lost),
        weighted_value=weighted_value(active),
        win_rate=Decimal(len(won)) / closed if closed else ZERO,
        average_deal_size=total_value / total_count if total_count else ZERO,
        distribution=stage_distribution(active),
    )
