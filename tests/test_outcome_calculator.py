"""
Tests for the quorum and approval rules.
"""

import pytest

from board_voting.models import CompletionReason, ItemKind, ItemStatus
from board_voting.services.outcome_calculator import (
    OutcomeRules,
    TallyCounts,
    approval_fraction,
    calculate_outcome,
    check_quorum,
    outcome_statuses,
)


def outcome(for_count, against_count, abstain_count, eligible, quorum=50.0, approval=75.0, **kwargs):
    return calculate_outcome(
        kind=kwargs.pop("kind", ItemKind.RESOLUTION),
        counts=TallyCounts(for_count, against_count, abstain_count),
        total_eligible_voters=eligible,
        quorum_threshold=quorum,
        approval_threshold=approval,
        **kwargs,
    )


# =============================================================================
# QUORUM
# =============================================================================


class TestCheckQuorum:
    def test_quorum_met_exactly_at_threshold(self):
        quorum = check_quorum(4, 8, 50.0)
        assert quorum.met is True
        assert quorum.required_votes == 4
        assert quorum.participation_rate == 50.0
        assert quorum.shortfall == 0

    def test_required_votes_rounds_up(self):
        quorum = check_quorum(3, 7, 50.0)
        assert quorum.required_votes == 4
        assert quorum.met is False
        assert quorum.shortfall == 1

    def test_no_eligible_voters_never_meets_quorum(self):
        quorum = check_quorum(0, 0, 50.0)
        assert quorum.met is False
        assert quorum.participation_rate == 0.0

    def test_zero_threshold_met_with_no_votes(self):
        quorum = check_quorum(0, 5, 0.0)
        assert quorum.met is True
        assert quorum.required_votes == 0


# =============================================================================
# APPROVAL
# =============================================================================


class TestApproval:
    def test_abstentions_excluded_by_default(self):
        assert approval_fraction(TallyCounts(3, 1, 4)) == pytest.approx(0.75)

    def test_abstentions_included_when_configured(self):
        rules = OutcomeRules(abstain_counts_toward_approval=True)
        assert approval_fraction(TallyCounts(3, 1, 4), rules) == pytest.approx(0.375)

    def test_no_decisive_votes_is_zero_approval(self):
        assert approval_fraction(TallyCounts(0, 0, 3)) == 0


# =============================================================================
# OUTCOME
# =============================================================================


class TestCalculateOutcome:
    def test_six_of_eight_meets_75_percent(self):
        result = outcome(6, 2, 0, eligible=8)
        assert result.passed is True
        assert result.status == ItemStatus.PASSED
        assert result.participation_rate == 100.0
        assert result.approval_percentage == 75.0
        assert result.reason == "Approved by 75.0% of decisive votes"

    def test_just_below_approval_threshold_fails(self):
        result = outcome(5, 2, 0, eligible=8)
        assert result.passed is False
        assert result.status == ItemStatus.FAILED
        assert result.reason.startswith("Insufficient approval")

    def test_unanimous_approval(self):
        result = outcome(5, 0, 0, eligible=5)
        assert result.passed is True
        assert result.reason == "Unanimous approval"

    def test_quorum_failure_wins_over_approval(self):
        result = outcome(2, 0, 0, eligible=5, completion_reason=CompletionReason.DEADLINE_EXPIRED)
        assert result.passed is False
        assert result.approval_met is True
        assert result.quorum.met is False
        assert result.reason.startswith("Deadline expired: Quorum not met (40.0% participation")

    def test_quorum_failure_without_deadline_has_no_prefix(self):
        result = outcome(1, 0, 0, eligible=5, completion_reason=CompletionReason.MANUAL)
        assert result.reason.startswith("Quorum not met")

    def test_abstentions_count_toward_participation(self):
        result = outcome(2, 0, 3, eligible=5)
        assert result.quorum.met is True
        assert result.participation_rate == 100.0
        assert result.passed is True

    def test_abstention_rule_can_flip_the_result(self):
        rules = OutcomeRules(abstain_counts_toward_approval=True)
        result = outcome(2, 0, 3, eligible=5, rules=rules)
        assert result.approval_percentage == 40.0
        assert result.passed is False

    def test_minutes_use_approved_and_rejected(self):
        assert outcome(4, 0, 0, eligible=4, kind=ItemKind.MINUTES).status == ItemStatus.APPROVED
        assert outcome(1, 3, 0, eligible=4, kind=ItemKind.MINUTES).status == ItemStatus.REJECTED

    def test_outcome_statuses_per_kind(self):
        assert outcome_statuses(ItemKind.RESOLUTION) == (ItemStatus.PASSED, ItemStatus.FAILED)
        assert outcome_statuses(ItemKind.MINUTES) == (ItemStatus.APPROVED, ItemStatus.REJECTED)
