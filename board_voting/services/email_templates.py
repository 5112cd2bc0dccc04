"""
Voting summary statistics and email rendering.

Builds the figures shown in a completion summary (margin, unanimity,
quorum shortfall, non-voters) and renders one personalized text + HTML
message per recipient.
"""

from dataclasses import dataclass, field
from datetime import datetime
from html import escape
from uuid import UUID

from ..models import CompletionReason, ItemKind, VoteChoice
from .email_transport import RenderedEmail
from .outcome_calculator import OutcomeResult, TallyCounts


SUBJECT_TITLE_LIMIT = 50
COMMENT_PREVIEW_LIMIT = 200


# =============================================================================
# STATISTICS
# =============================================================================


@dataclass(frozen=True)
class VotingMargin:
    absolute: int
    percentage: float
    margin_type: str  # victory | defeat | tie
    description: str


@dataclass(frozen=True)
class VoterLine:
    """One cast vote as it appears in the summary."""
    voter_id: UUID
    name: str
    position: str | None
    choice: VoteChoice
    comment: str | None = None


@dataclass
class VotingSummary:
    """Everything a summary email needs, shared by all recipients."""
    item_id: UUID
    kind: ItemKind
    title: str
    outcome: OutcomeResult
    counts: TallyCounts
    total_eligible_voters: int
    quorum_threshold: float
    approval_threshold: float
    completion_reason: CompletionReason | None
    completed_at: datetime | None
    votes: list[VoterLine] = field(default_factory=list)
    non_voters: list[str] = field(default_factory=list)

    @property
    def margin(self) -> VotingMargin:
        return calculate_margin(self.counts.for_count, self.counts.against_count)

    @property
    def unanimous_choice(self) -> VoteChoice | None:
        return unanimous_choice(self.counts)

    def share(self, count: int) -> float:
        total = self.counts.total_votes
        return round(count / total * 100, 2) if total else 0.0

    def vote_of(self, voter_id: UUID) -> VoterLine | None:
        for line in self.votes:
            if line.voter_id == voter_id:
                return line
        return None


def calculate_margin(for_count: int, against_count: int) -> VotingMargin:
    absolute = abs(for_count - against_count)
    decisive = for_count + against_count
    percentage = round(absolute / decisive * 100, 2) if decisive else 0.0
    plural = "s" if absolute != 1 else ""

    if for_count > against_count:
        return VotingMargin(absolute, percentage, "victory",
                            f"Carried by {absolute} vote{plural} ({percentage}% margin)")
    if against_count > for_count:
        return VotingMargin(absolute, percentage, "defeat",
                            f"Opposed by {absolute} vote{plural} ({percentage}% margin)")
    return VotingMargin(0, 0.0, "tie", "Tied vote - no margin")


def unanimous_choice(counts: TallyCounts) -> VoteChoice | None:
    """APPROVE or REJECT when every vote cast was the same; otherwise None."""
    total = counts.total_votes
    if total == 0:
        return None
    if counts.for_count == total:
        return VoteChoice.APPROVE
    if counts.against_count == total:
        return VoteChoice.REJECT
    return None


# =============================================================================
# RENDERING
# =============================================================================


def _kind_label(kind: ItemKind) -> str:
    return "Resolution" if kind == ItemKind.RESOLUTION else "Minutes"


def build_subject(organization: str, kind: ItemKind, title: str, passed: bool) -> str:
    if len(title) > SUBJECT_TITLE_LIMIT:
        title = title[:SUBJECT_TITLE_LIMIT - 3] + "..."
    result = "PASSED" if passed else "FAILED"
    return f"{organization} - {_kind_label(kind)} Voting Complete: {title} - {result}"


def _preview(comment: str) -> str:
    if len(comment) > COMMENT_PREVIEW_LIMIT:
        return comment[:COMMENT_PREVIEW_LIMIT] + "..."
    return comment


def _personal_note(summary: VotingSummary, recipient_id: UUID) -> tuple[str, str | None]:
    """(sentence, comment) describing the recipient's own participation."""
    target = "this resolution" if summary.kind == ItemKind.RESOLUTION else "these minutes"
    own = summary.vote_of(recipient_id)
    if own is None:
        return f"You did not vote on {target}.", None
    return f"You voted {own.choice.value.upper()} on {target}.", own.comment


def render_summary(
    summary: VotingSummary,
    recipient_id: UUID,
    recipient_name: str,
    organization: str,
    portal_url: str,
) -> RenderedEmail:
    """Render the summary for one recipient."""
    return RenderedEmail(
        subject=build_subject(organization, summary.kind, summary.title, summary.outcome.passed),
        text_body=render_text(summary, recipient_id, recipient_name, organization, portal_url),
        html_body=render_html(summary, recipient_id, recipient_name, organization, portal_url),
    )


def _item_url(summary: VotingSummary, portal_url: str) -> str:
    section = "resolutions" if summary.kind == ItemKind.RESOLUTION else "minutes"
    return f"{portal_url.rstrip('/')}/dashboard/{section}/{summary.item_id}"


def render_text(
    summary: VotingSummary,
    recipient_id: UUID,
    recipient_name: str,
    organization: str,
    portal_url: str,
) -> str:
    label = _kind_label(summary.kind)
    counts = summary.counts
    outcome = summary.outcome
    quorum = outcome.quorum
    note, own_comment = _personal_note(summary, recipient_id)

    lines = [
        f"{organization.upper()} - {label.upper()} VOTING SUMMARY",
        "=" * 60,
        "",
        f"Hello {recipient_name},",
        "",
        f"Voting has concluded for the following {label.lower()}:",
        "",
        summary.title,
        "",
        f"RESULT: {outcome.status.value.upper()}",
        f"Reason: {outcome.reason}",
        "",
        note,
    ]
    if own_comment:
        lines.append(f'Your comment: "{_preview(own_comment)}"')

    lines += [
        "",
        "VOTING SUMMARY",
        "-" * 14,
        f"Total Votes Cast: {counts.total_votes} of {summary.total_eligible_voters} eligible voters",
        f"Participation Rate: {outcome.participation_rate:.1f}%",
        f"Approval Rate: {outcome.approval_percentage:.1f}%",
        f"Margin: {summary.margin.description}",
        "",
        "VOTE BREAKDOWN",
        "-" * 14,
        f"Approve: {counts.for_count} ({summary.share(counts.for_count):.1f}%)",
        f"Reject: {counts.against_count} ({summary.share(counts.against_count):.1f}%)",
        f"Abstain: {counts.abstain_count} ({summary.share(counts.abstain_count):.1f}%)",
        "",
        "QUORUM",
        "-" * 6,
    ]
    if quorum.met:
        lines.append(f"MET ({quorum.actual_votes} of {quorum.required_votes} required votes)")
    else:
        lines.append(
            f"NOT MET ({quorum.actual_votes} of {quorum.required_votes} required votes, "
            f"short by {quorum.shortfall})"
        )
    if summary.unanimous_choice is not None:
        lines.append(f"Unanimous {summary.unanimous_choice.value} vote")

    if summary.votes:
        lines += ["", "INDIVIDUAL VOTES", "-" * 16]
        for vote in summary.votes:
            position = f" ({vote.position})" if vote.position else ""
            lines.append(f"* {vote.name}{position}: {vote.choice.value.upper()}")
            if vote.comment:
                lines.append(f'   Comment: "{_preview(vote.comment)}"')

    if summary.non_voters:
        lines += ["", f"MEMBERS WHO DID NOT VOTE ({len(summary.non_voters)})", "-" * 30]
        lines += [f"* {name}" for name in summary.non_voters]

    lines += [
        "",
        "VIEW FULL DETAILS",
        "-" * 17,
        _item_url(summary, portal_url),
        "",
        "-" * 60,
        f"This is an automated notification from {organization}.",
        "You can manage your notification preferences in your account settings.",
    ]
    return "\n".join(lines)


def render_html(
    summary: VotingSummary,
    recipient_id: UUID,
    recipient_name: str,
    organization: str,
    portal_url: str,
) -> str:
    label = _kind_label(summary.kind)
    counts = summary.counts
    outcome = summary.outcome
    quorum = outcome.quorum
    note, own_comment = _personal_note(summary, recipient_id)

    outcome_color = "#10B981" if outcome.passed else "#EF4444"  # Green or red
    quorum_text = (
        f"Met ({quorum.actual_votes} of {quorum.required_votes} required votes)"
        if quorum.met
        else f"Not met ({quorum.actual_votes} of {quorum.required_votes} required votes, "
             f"short by {quorum.shortfall})"
    )

    own_comment_html = ""
    if own_comment:
        own_comment_html = (
            f'<p style="margin: 4px 0 0 0; color: #6B7280;">'
            f'Your comment: &ldquo;{escape(_preview(own_comment))}&rdquo;</p>'
        )

    vote_rows = "".join(
        f"<li><strong>{escape(v.name)}</strong>"
        f"{' (' + escape(v.position) + ')' if v.position else ''}: {v.choice.value.upper()}"
        f"{'<br><em>' + escape(_preview(v.comment)) + '</em>' if v.comment else ''}</li>"
        for v in summary.votes
    )
    non_voter_rows = "".join(f"<li>{escape(name)}</li>" for name in summary.non_voters)

    non_voters_html = ""
    if summary.non_voters:
        non_voters_html = f"""
        <h3 style="font-size: 14px; color: #92400E;">Members Who Did Not Vote ({len(summary.non_voters)})</h3>
        <ul>{non_voter_rows}</ul>"""

    unanimous_html = ""
    if summary.unanimous_choice is not None:
        unanimous_html = f"<p><strong>Unanimous {summary.unanimous_choice.value} vote</strong></p>"

    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, 'Helvetica Neue', Arial, sans-serif;
             line-height: 1.6; color: #374151; max-width: 600px; margin: 0 auto; padding: 20px;">

    <div style="background-color: {outcome_color}; color: white; padding: 16px; border-radius: 8px 8px 0 0;">
        <h1 style="margin: 0; font-size: 18px;">{label} Voting Complete: {outcome.status.value.upper()}</h1>
    </div>

    <div style="border: 1px solid #E5E7EB; border-top: none; padding: 24px; border-radius: 0 0 8px 8px;">
        <p>Hi {escape(recipient_name)},</p>

        <p>Voting has concluded for the following {label.lower()}:</p>

        <div style="background-color: #F9FAFB; padding: 16px; border-radius: 8px; margin: 20px 0;">
            <h2 style="margin: 0 0 8px 0; font-size: 16px; color: #111827;">{escape(summary.title)}</h2>
            <p style="margin: 0; color: #6B7280; font-size: 14px;">{escape(outcome.reason)}</p>
        </div>

        <p>{note}</p>
        {own_comment_html}

        <table style="width: 100%; border-collapse: collapse; margin: 16px 0; font-size: 14px;">
            <tr><td>Votes cast</td><td>{counts.total_votes} of {summary.total_eligible_voters}</td></tr>
            <tr><td>Participation</td><td>{outcome.participation_rate:.1f}%</td></tr>
            <tr><td>Approval</td><td>{outcome.approval_percentage:.1f}%</td></tr>
            <tr><td>Approve / Reject / Abstain</td>
                <td>{counts.for_count} / {counts.against_count} / {counts.abstain_count}</td></tr>
            <tr><td>Quorum</td><td>{quorum_text}</td></tr>
            <tr><td>Margin</td><td>{escape(summary.margin.description)}</td></tr>
        </table>
        {unanimous_html}

        <h3 style="font-size: 14px;">Individual Votes</h3>
        <ul>{vote_rows or '<li>No votes were cast.</li>'}</ul>
        {non_voters_html}

        <div style="margin-top: 24px;">
            <a href="{escape(_item_url(summary, portal_url))}" style="display: inline-block; background-color: {outcome_color}; color: white;
                              padding: 12px 24px; text-decoration: none; border-radius: 6px; font-weight: 500;">
                View {label}
            </a>
        </div>

        <hr style="border: none; border-top: 1px solid #E5E7EB; margin: 24px 0;">

        <p style="color: #9CA3AF; font-size: 12px;">
            This is an automated notification from {escape(organization)}.
            <br>
            You can manage your notification preferences in your account settings.
        </p>
    </div>
</body>
</html>
"""
