"""
Outcome Calculator: quorum and approval rules.

Rates are percentages (0-100). Threshold comparisons are inclusive and are
done on exact fractions so that boundary cases such as 6/8 against a 75%
threshold never fall on the wrong side through float rounding.
"""

from dataclasses import dataclass
from fractions import Fraction

from ..models import CompletionReason, ItemKind, ItemStatus


@dataclass(frozen=True)
class TallyCounts:
    """Vote counts for one item."""
    for_count: int = 0
    against_count: int = 0
    abstain_count: int = 0

    @property
    def total_votes(self) -> int:
        return self.for_count + self.against_count + self.abstain_count


@dataclass(frozen=True)
class OutcomeRules:
    """Rule switches for the approval calculation."""

    # Whether abstentions count in the approval denominator. They always
    # count toward participation.
    abstain_counts_toward_approval: bool = False


DEFAULT_RULES = OutcomeRules()


@dataclass(frozen=True)
class QuorumStatus:
    met: bool
    required_votes: int
    actual_votes: int
    participation_rate: float
    shortfall: int


@dataclass(frozen=True)
class OutcomeResult:
    """Outcome of a concluded vote."""
    status: ItemStatus
    passed: bool
    participation_rate: float
    approval_percentage: float
    quorum: QuorumStatus
    approval_met: bool
    reason: str


def _percent(value: Fraction) -> float:
    return round(float(value * 100), 2)


def participation_fraction(total_votes: int, total_eligible_voters: int) -> Fraction:
    if total_eligible_voters <= 0:
        return Fraction(0)
    return Fraction(total_votes, total_eligible_voters)


def approval_fraction(counts: TallyCounts, rules: OutcomeRules = DEFAULT_RULES) -> Fraction:
    denominator = counts.for_count + counts.against_count
    if rules.abstain_counts_toward_approval:
        denominator += counts.abstain_count
    return Fraction(counts.for_count, max(1, denominator))


def check_quorum(
    total_votes: int,
    total_eligible_voters: int,
    quorum_threshold: float,
) -> QuorumStatus:
    """Check participation against the quorum threshold."""
    participation = participation_fraction(total_votes, total_eligible_voters)
    threshold = Fraction(str(quorum_threshold)) / 100
    met = total_eligible_voters > 0 and participation >= threshold

    # Smallest whole number of votes that satisfies the threshold
    required = threshold * total_eligible_voters
    required_votes = required.numerator // required.denominator
    if required_votes < required:
        required_votes += 1

    return QuorumStatus(
        met=met,
        required_votes=required_votes,
        actual_votes=total_votes,
        participation_rate=_percent(participation),
        shortfall=0 if met else max(0, required_votes - total_votes),
    )


def outcome_statuses(kind: ItemKind) -> tuple[ItemStatus, ItemStatus]:
    """(success, failure) terminal statuses for an item kind."""
    if kind == ItemKind.MINUTES:
        return ItemStatus.APPROVED, ItemStatus.REJECTED
    return ItemStatus.PASSED, ItemStatus.FAILED


def calculate_outcome(
    kind: ItemKind,
    counts: TallyCounts,
    total_eligible_voters: int,
    quorum_threshold: float,
    approval_threshold: float,
    completion_reason: CompletionReason | None = None,
    rules: OutcomeRules = DEFAULT_RULES,
) -> OutcomeResult:
    """
    Apply quorum and approval rules to a tally.

    Passes iff participation >= quorum AND approval >= approval threshold.
    An item whose deadline expired below quorum fails whatever its approval.
    """
    quorum = check_quorum(counts.total_votes, total_eligible_voters, quorum_threshold)
    approval = approval_fraction(counts, rules)
    approval_met = approval >= Fraction(str(approval_threshold)) / 100

    passed = quorum.met and approval_met
    success_status, failure_status = outcome_statuses(kind)
    approval_pct = _percent(approval)

    if not quorum.met:
        prefix = "Deadline expired: " if completion_reason == CompletionReason.DEADLINE_EXPIRED else ""
        reason = (
            f"{prefix}Quorum not met ({quorum.participation_rate}% participation, "
            f"{quorum_threshold}% required)"
        )
    elif not approval_met:
        reason = (
            f"Insufficient approval ({approval_pct}% approval, "
            f"{approval_threshold}% required)"
        )
    elif counts.for_count == counts.total_votes:
        reason = "Unanimous approval"
    else:
        reason = f"Approved by {approval_pct}% of decisive votes"

    return OutcomeResult(
        status=success_status if passed else failure_status,
        passed=passed,
        participation_rate=quorum.participation_rate,
        approval_percentage=approval_pct,
        quorum=quorum,
        approval_met=approval_met,
        reason=reason,
    )
