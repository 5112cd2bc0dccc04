"""
Tests for summary rendering and bulk email dispatch.
"""

from uuid import uuid4

import pytest
from sqlalchemy import select

from board_voting.models import (
    DeliveryStatus,
    EmailDeliveryAttempt,
    ItemKind,
    ItemStatus,
    Profile,
)
from board_voting.services.email_dispatch import normalize_email
from board_voting.services.email_templates import (
    SUBJECT_TITLE_LIMIT,
    build_subject,
    calculate_margin,
)
from board_voting.services.exceptions import InvalidOperationError, ItemNotFoundError


async def concluded_vote(voting, make_board, make_item, now, choices, eligible=None, **item_kwargs):
    """Board members vote ``choices`` in order; the item then concludes."""
    members = await make_board(eligible or len(choices))
    item = await make_item(total_eligible_voters=len(members), **item_kwargs)
    for member, choice in zip(members, choices):
        await voting.record_vote(item.id, member.id, choice, now=now)
    if len(choices) < len(members):
        await voting.close_voting(item.id, now=now)
    return item, members


async def delivery_rows(session_factory, item_id) -> dict[str, EmailDeliveryAttempt]:
    async with session_factory() as session:
        rows = await session.execute(
            select(EmailDeliveryAttempt).where(EmailDeliveryAttempt.item_id == item_id)
        )
        return {row.email: row for row in rows.scalars().all()}


# =============================================================================
# RENDERING
# =============================================================================


class TestRendering:
    def test_subject_truncates_long_titles(self):
        title = "A" * 80
        subject = build_subject("Acme Board", ItemKind.RESOLUTION, title, passed=True)
        assert subject == (
            f"Acme Board - Resolution Voting Complete: {'A' * (SUBJECT_TITLE_LIMIT - 3)}... - PASSED"
        )

    def test_subject_for_rejected_minutes(self):
        subject = build_subject("Acme Board", ItemKind.MINUTES, "March meeting", passed=False)
        assert subject == "Acme Board - Minutes Voting Complete: March meeting - FAILED"

    def test_margin(self):
        assert calculate_margin(5, 2).margin_type == "victory"
        assert calculate_margin(2, 5).margin_type == "defeat"
        assert calculate_margin(3, 3).margin_type == "tie"

    def test_normalize_email(self):
        assert normalize_email("Member@ACME-Board.org") == "Member@acme-board.org"
        assert normalize_email("not-an-email") is None
        assert normalize_email(None) is None


# =============================================================================
# DISPATCH
# =============================================================================


class TestSendCompletionSummary:
    async def test_every_member_gets_a_personal_summary(
        self, voting, dispatcher, transport, make_board, make_item, now
    ):
        item, members = await concluded_vote(
            voting, make_board, make_item, now, ["approve", "approve", "reject"], eligible=4
        )

        result = await dispatcher.send_completion_summary(item.id, ItemKind.RESOLUTION)

        assert (result.attempted, result.succeeded, result.failed) == (4, 4, 0)
        approver = transport.messages_to(members[0].email)[0]
        rejecter = transport.messages_to(members[2].email)[0]
        absent = transport.messages_to(members[3].email)[0]

        assert "You voted APPROVE on this resolution." in approver.text_body
        assert "You voted REJECT on this resolution." in rejecter.text_body
        assert "You did not vote on this resolution." in absent.text_body
        assert "MEMBERS WHO DID NOT VOTE (1)" in approver.text_body
        assert "RESULT: FAILED" in approver.text_body
        assert approver.subject.endswith(" - FAILED")
        assert f"https://board.acme.test/dashboard/resolutions/{item.id}" in approver.text_body

    async def test_minutes_summary(self, voting, dispatcher, transport, make_board, make_item, now):
        item, members = await concluded_vote(
            voting, make_board, make_item, now, ["approve", "approve"], kind=ItemKind.MINUTES
        )

        await dispatcher.send_completion_summary(item.id, ItemKind.MINUTES)

        message = transport.messages_to(members[0].email)[0]
        assert "RESULT: APPROVED" in message.text_body
        assert "You voted APPROVE on these minutes." in message.text_body
        assert "Unanimous approve vote" in message.text_body

    async def test_opted_out_and_inactive_members_are_skipped(
        self, voting, dispatcher, transport, make_board, make_profile, make_item, now
    ):
        item, _ = await concluded_vote(voting, make_board, make_item, now, ["approve"])
        opted_out = await make_profile(voting_email_opt_in=False)
        inactive = await make_profile(is_active=False)

        result = await dispatcher.send_completion_summary(item.id, ItemKind.RESOLUTION)

        assert (result.attempted, result.skipped) == (1, 2)
        assert transport.messages_to(opted_out.email) == []
        assert transport.messages_to(inactive.email) == []

    async def test_invalid_address_is_recorded_as_skipped(
        self, voting, dispatcher, session_factory, make_board, make_profile, make_item, now
    ):
        item, _ = await concluded_vote(voting, make_board, make_item, now, ["approve"])
        await make_profile(email="not-an-email")

        result = await dispatcher.send_completion_summary(item.id, ItemKind.RESOLUTION)

        assert result.skipped == 1
        rows = await delivery_rows(session_factory, item.id)
        assert rows["not-an-email"].status == DeliveryStatus.SKIPPED
        assert rows["not-an-email"].attempt_count == 0

    async def test_transient_failure_is_retried(
        self, voting, dispatcher, transport, session_factory, make_board, make_item, now
    ):
        item, members = await concluded_vote(voting, make_board, make_item, now, ["approve", "approve"])
        transport.fail(members[0].email, times=2)

        result = await dispatcher.send_completion_summary(item.id, ItemKind.RESOLUTION)

        assert result.failed == 0
        rows = await delivery_rows(session_factory, item.id)
        assert rows[members[0].email].status == DeliveryStatus.SENT
        assert rows[members[0].email].attempt_count == 3
        assert rows[members[1].email].attempt_count == 1

    async def test_one_failed_recipient_does_not_fail_the_batch(
        self, voting, dispatcher, transport, session_factory, make_board, make_item, now
    ):
        item, members = await concluded_vote(
            voting, make_board, make_item, now, ["approve", "approve", "approve"]
        )
        transport.fail(members[1].email)

        result = await dispatcher.send_completion_summary(item.id, ItemKind.RESOLUTION)

        assert (result.succeeded, result.failed) == (2, 1)
        assert result.all_failed is False
        assert result.errors == [f"{members[1].email}: 550 mailbox unavailable"]
        rows = await delivery_rows(session_factory, item.id)
        assert rows[members[1].email].status == DeliveryStatus.FAILED
        assert rows[members[1].email].attempt_count == 3
        assert rows[members[1].email].trigger_id == result.trigger_id

    async def test_wrong_kind_is_not_found(self, dispatcher, make_item):
        item = await make_item(status=ItemStatus.PASSED)

        with pytest.raises(ItemNotFoundError):
            await dispatcher.send_completion_summary(item.id, ItemKind.MINUTES)

    async def test_unknown_item_is_not_found(self, dispatcher):
        with pytest.raises(ItemNotFoundError):
            await dispatcher.send_completion_summary(uuid4(), ItemKind.RESOLUTION)


async def deactivate(session_factory, profile_id) -> None:
    async with session_factory() as session:
        profile = await session.get(Profile, profile_id)
        profile.is_active = False
        await session.commit()


# =============================================================================
# HISTORY AND RETRY
# =============================================================================


class TestDeliveryHistory:
    async def test_filters_by_trigger_and_status(
        self, voting, dispatcher, transport, make_board, make_item, now
    ):
        item, members = await concluded_vote(voting, make_board, make_item, now, ["approve", "approve"])
        first = await dispatcher.send_completion_summary(item.id, ItemKind.RESOLUTION)
        transport.fail(members[1].email)
        second = await dispatcher.send_completion_summary(item.id, ItemKind.RESOLUTION)

        everything = await dispatcher.delivery_history(item.id)
        failed = await dispatcher.delivery_history(
            item.id, trigger_id=second.trigger_id, status=DeliveryStatus.FAILED
        )
        first_rows = await dispatcher.delivery_history(item.id, trigger_id=first.trigger_id)

        assert len(everything) == 4
        assert [(r.email, r.trigger_id) for r in failed] == [(members[1].email, second.trigger_id)]
        assert {r.status for r in first_rows} == {DeliveryStatus.SENT}
        assert await dispatcher.latest_failed_trigger(item.id) == second.trigger_id

    async def test_limit(self, voting, dispatcher, make_board, make_item, now):
        item, _ = await concluded_vote(voting, make_board, make_item, now, ["approve"] * 3)
        await dispatcher.send_completion_summary(item.id, ItemKind.RESOLUTION)

        assert len(await dispatcher.delivery_history(item.id, limit=2)) == 2
        assert await dispatcher.latest_failed_trigger(item.id) is None


class TestRetryFailed:
    async def test_only_failed_recipients_are_resent(
        self, voting, dispatcher, transport, session_factory, make_board, make_item, now
    ):
        item, members = await concluded_vote(
            voting, make_board, make_item, now, ["approve", "approve", "reject"]
        )
        # Fails every attempt of the first dispatch, then recovers
        transport.fail(members[1].email, times=3)
        original = await dispatcher.send_completion_summary(item.id, ItemKind.RESOLUTION)
        assert original.failed == 1
        transport.calls.clear()

        result = await dispatcher.retry_failed(item.id, ItemKind.RESOLUTION, original.trigger_id)

        assert transport.calls == [members[1].email]
        assert (result.attempted, result.succeeded, result.failed) == (1, 1, 0)
        assert result.trigger_id == original.trigger_id
        rows = await delivery_rows(session_factory, item.id)
        assert len(rows) == 3
        assert rows[members[1].email].status == DeliveryStatus.SENT
        assert rows[members[1].email].attempt_count == 4
        assert rows[members[1].email].last_error is None
        assert rows[members[0].email].attempt_count == 1

        retried = transport.messages_to(members[1].email)[0]
        assert "You voted APPROVE on this resolution." in retried.text_body

    async def test_still_failing_recipient_stays_failed(
        self, voting, dispatcher, transport, session_factory, make_board, make_item, now
    ):
        item, members = await concluded_vote(voting, make_board, make_item, now, ["approve", "approve"])
        transport.fail(members[0].email)
        original = await dispatcher.send_completion_summary(item.id, ItemKind.RESOLUTION)

        result = await dispatcher.retry_failed(item.id, ItemKind.RESOLUTION, original.trigger_id)

        assert result.all_failed is True
        rows = await delivery_rows(session_factory, item.id)
        assert rows[members[0].email].status == DeliveryStatus.FAILED
        assert rows[members[0].email].attempt_count == 6

    async def test_deactivated_recipient_is_skipped(
        self, voting, dispatcher, transport, session_factory, make_board, make_item, now
    ):
        item, members = await concluded_vote(voting, make_board, make_item, now, ["approve", "approve"])
        transport.fail(members[0].email)
        original = await dispatcher.send_completion_summary(item.id, ItemKind.RESOLUTION)
        await deactivate(session_factory, members[0].id)
        transport.calls.clear()

        result = await dispatcher.retry_failed(item.id, ItemKind.RESOLUTION, original.trigger_id)

        assert (result.attempted, result.skipped) == (0, 1)
        assert transport.calls == []
        rows = await delivery_rows(session_factory, item.id)
        assert rows[members[0].email].status == DeliveryStatus.FAILED

    async def test_trigger_without_failures_is_rejected(
        self, voting, dispatcher, make_board, make_item, now
    ):
        item, _ = await concluded_vote(voting, make_board, make_item, now, ["approve"])
        original = await dispatcher.send_completion_summary(item.id, ItemKind.RESOLUTION)

        with pytest.raises(InvalidOperationError):
            await dispatcher.retry_failed(item.id, ItemKind.RESOLUTION, original.trigger_id)
