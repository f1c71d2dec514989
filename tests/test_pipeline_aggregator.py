import unittest
from datetime import datetime, timezone
from decimal import Decimal

from crm_pipeline.application import pipeline_aggregator
from crm_pipeline.domain import stage_policy
from crm_pipeline.domain.models import Opportunity, Status
from crm_pipeline.domain.stage_policy import Stage

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _opportunity(opp_id: str, value: str, stage: Stage, probability: int, status: Status = Status.ACTIVE) -> Opportunity:
    return Opportunity(
        id=opp_id,
        title=f"Deal {opp_id}",
        value=Decimal(value),
        stage=stage,
        status=status,
        probability=probability,
        actual_close_date=None if status is Status.ACTIVE else NOW,
        owner_id="user-1",
        created_at=NOW,
        updated_at=NOW,
    )


class TestSummarizePipeline(unittest.TestCase):
    def test_weighted_value_of_known_fixture(self) -> None:
        opportunities = [
            _opportunity("a", "1000", Stage.PROPOSAL, 50),
            _opportunity("b", "2000", Stage.QUALIFICATION, 25),
        ]

        report = pipeline_aggregator.summarize_pipeline(opportunities)

        self.assertEqual(report.weighted_value, Decimal("1000"))
        self.assertEqual(report.total_value, Decimal("3000"))
        self.assertEqual(report.total_count, 2)

    def test_every_stage_is_listed_once_in_order(self) -> None:
        report = pipeline_aggregator.summarize_pipeline([_opportunity("a", "10", Stage.NEGOTIATION, 75)])

        self.assertEqual([summary.stage for summary in report.stages], list(stage_policy.stages()))
        empty = [summary for summary in report.stages if summary.stage is not Stage.NEGOTIATION]
        for summary in empty:
            self.assertEqual(summary.count, 0)
            self.assertEqual(summary.total_value, Decimal("0"))
            self.assertEqual(summary.average_probability, Decimal("0"))

    def test_empty_working_set(self) -> None:
        report = pipeline_aggregator.summarize_pipeline([])

        self.assertEqual(len(report.stages), len(stage_policy.stages()))
        self.assertEqual(report.total_count, 0)
        self.assertEqual(report.weighted_value, Decimal("0"))

    def test_overridden_probability_drives_weighted_value(self) -> None:
        # Stage default for proposal is 50; the deal was overridden to 80.
        report = pipeline_aggregator.summarize_pipeline([_opportunity("a", "500", Stage.PROPOSAL, 80)])
        self.assertEqual(report.weighted_value, Decimal("400"))

    def test_per_stage_average_probability(self) -> None:
        report = pipeline_aggregator.summarize_pipeline([
            _opportunity("a", "100", Stage.PROPOSAL, 50),
            _opportunity("b", "300", Stage.PROPOSAL, 60),
        ])

        proposal = next(summary for summary in report.stages if summary.stage is Stage.PROPOSAL)
        self.assertEqual(proposal.count, 2)
        self.assertEqual(proposal.total_value, Decimal("400"))
        self.assertEqual(proposal.average_probability, Decimal("55.00"))

    def test_closed_opportunities_are_ignored(self) -> None:
        report = pipeline_aggregator.summarize_pipeline([
            _opportunity("a", "100", Stage.PROPOSAL, 50),
            _opportunity("b", "900", Stage.CLOSING, 100, Status.WON),
        ])

        self.assertEqual(report.total_count, 1)
        self.assertEqual(report.total_value, Decimal("100"))

    def test_many_small_amounts_sum_exactly(self) -> None:
        opportunities = [_opportunity(str(i), "0.10", Stage.PROSPECTING, 33) for i in range(1000)]

        report = pipeline_aggregator.summarize_pipeline(opportunities)

        self.assertEqual(report.weighted_value, Decimal("33.0000"))


class TestComputeStats(unittest.TestCase):
    def test_partitions_win_rate_and_average(self) -> None:
        stats = pipeline_aggregator.compute_stats([
            _opportunity("a", "1000", Stage.PROPOSAL, 50),
            _opportunity("b", "3000", Stage.CLOSING, 100, Status.WON),
            _opportunity("c", "2000", Stage.NEGOTIATION, 0, Status.LOST),
            _opportunity("d", "2000", Stage.LOST, 0, Status.LOST),
        ])

        self.assertEqual(stats.total_count, 4)
        self.assertEqual(stats.active_count, 1)
        self.assertEqual(stats.won_count, 1)
        self.assertEqual(stats.lost_count, 2)
        self.assertEqual(stats.total_value, Decimal("8000"))
        self.assertEqual(stats.won_value, Decimal("3000"))
        self.assertEqual(stats.lost_value, Decimal("4000"))
        self.assertEqual(stats.active_value, Decimal("1000"))
        self.assertEqual(stats.weighted_value, Decimal("500"))
        self.assertEqual(stats.win_rate, Decimal(1) / Decimal(3))
        self.assertEqual(stats.average_deal_size, Decimal("2000"))
        self.assertEqual(len(stats.distribution), len(stage_policy.stages()))

    def test_no_closed_deals_means_zero_win_rate(self) -> None:
        stats = pipeline_aggregator.compute_stats([_opportunity("a", "1000", Stage.PROPOSAL, 50)])
        self.assertEqual(stats.win_rate, Decimal("0"))

    def test_empty_set_has_zero_average(self) -> None:
        stats = pipeline_aggregator.compute_stats([])

        self.assertEqual(stats.total_count, 0)
        self.assertEqual(stats.average_deal_size, Decimal("0"))
        self.assertEqual(stats.win_rate, Decimal("0"))
