"""
End-to-end tests through the HTTP API with a running pipeline: votes come
in over HTTP, completion goes out on the in-memory channel and the listener
sends the summary emails.
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

import httpx
import pytest

from board_voting.core.config import get_settings
from board_voting.main import app
from board_voting.models import ItemStatus
from board_voting.services.event_channel import InMemoryEventChannel
from board_voting.services.pipeline import VotingPipeline

API = "/api/v1"


async def eventually(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
async def pipeline(session_factory, transport):
    settings = get_settings().model_copy(update={
        "email_retry_base_delay": 0.0,
        "store_retry_base_delay": 0.01,
        "listener_reconnect_base_delay": 0.01,
    })
    pipeline = VotingPipeline(settings, session_factory, channel=InMemoryEventChannel(), transport=transport)
    await pipeline.start()
    await pipeline.listener.wait_until_listening(timeout=1.0)
    app.state.pipeline = pipeline
    yield pipeline
    app.state.pipeline = None
    await pipeline.stop()


@pytest.fixture
async def client(pipeline):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as client:
        yield client


def as_voter(profile) -> dict[str, str]:
    return {"X-User-ID": str(profile.id)}


# =============================================================================
# VOTING FLOW
# =============================================================================


class TestVotingFlow:
    async def test_final_vote_triggers_summary_emails(self, client, pipeline, transport, make_board, make_item):
        members = await make_board(3)
        item = await make_item(total_eligible_voters=3)

        for member in members[:2]:
            response = await client.post(
                f"{API}/items/{item.id}/votes", json={"choice": "approve"}, headers=as_voter(member)
            )
            assert response.status_code == 200
            assert response.json()["completion"] is None

        response = await client.post(
            f"{API}/items/{item.id}/votes",
            json={"choice": "reject", "comment": "Too expensive"},
            headers=as_voter(members[2]),
        )
        body = response.json()
        assert response.status_code == 200
        assert body["tally"] == {"for_count": 2, "against_count": 1, "abstain_count": 0, "total_votes": 3}
        assert body["completion"]["reason"] == "all_voted"
        assert body["completion"]["outcome"]["status"] == "failed"

        await eventually(lambda: pipeline.listener.sent == 1)
        assert sorted(address for address, _ in transport.sent) == sorted(m.email for m in members)

        tally = (await client.get(f"{API}/items/{item.id}/tally")).json()
        assert tally["status"] == "failed"
        assert tally["completion_reason"] == "all_voted"

    async def test_revote_is_idempotent(self, client, make_board, make_item):
        members = await make_board(5)
        item = await make_item()

        await client.post(f"{API}/items/{item.id}/votes", json={"choice": "approve"}, headers=as_voter(members[0]))
        response = await client.post(
            f"{API}/items/{item.id}/votes", json={"choice": "abstain"}, headers=as_voter(members[0])
        )

        assert response.json()["updated_existing"] is True
        assert response.json()["tally"]["total_votes"] == 1

    async def test_manual_send_after_completion_is_deduplicated(
        self, client, pipeline, make_board, make_item
    ):
        members = await make_board(2)
        item = await make_item(total_eligible_voters=2)
        for member in members:
            await client.post(f"{API}/items/{item.id}/votes", json={"choice": "approve"}, headers=as_voter(member))
        await eventually(lambda: pipeline.listener.sent == 1)

        response = await client.post(f"{API}/notifications/resolution/{item.id}/send")
        assert response.json()["status"] == "duplicate_suppressed"

        response = await client.post(f"{API}/notifications/resolution/{item.id}/send", params={"force": "true"})
        assert response.json()["status"] == "sent"
        assert response.json()["succeeded"] == 2

    async def test_delivery_history_and_retry_failed(self, client, pipeline, transport, make_board, make_item):
        members = await make_board(2)
        item = await make_item(total_eligible_voters=2)
        transport.fail(members[1].email, times=pipeline.settings.email_max_attempts)
        for member in members:
            await client.post(f"{API}/items/{item.id}/votes", json={"choice": "approve"}, headers=as_voter(member))
        await eventually(lambda: pipeline.listener.processed == 1)

        response = await client.get(
            f"{API}/notifications/resolution/{item.id}/deliveries", params={"status": "failed"}
        )
        assert response.status_code == 200
        failed = response.json()
        assert [row["email"] for row in failed] == [members[1].email]
        trigger_id = failed[0]["trigger_id"]

        response = await client.post(
            f"{API}/notifications/resolution/{item.id}/retry-failed", params={"trigger_id": trigger_id}
        )
        assert response.status_code == 200
        assert response.json()["status"] == "sent"
        assert response.json()["trigger_id"] == trigger_id
        assert (response.json()["attempted"], response.json()["succeeded"]) == (1, 1)

        history = (await client.get(f"{API}/notifications/resolution/{item.id}/deliveries")).json()
        assert sorted(row["status"] for row in history) == ["sent", "sent"]

        response = await client.post(f"{API}/notifications/resolution/{item.id}/retry-failed")
        assert response.status_code == 409
        assert response.json()["error"] == "invalid_operation"


# =============================================================================
# LIFECYCLE
# =============================================================================


class TestLifecycleRoutes:
    async def test_open_close_and_cancel(self, client, make_board, make_item, now):
        await make_board(3)
        draft = await make_item(status=ItemStatus.DRAFT, total_eligible_voters=0)

        response = await client.post(
            f"{API}/items/{draft.id}/open",
            json={"voting_deadline": (now + timedelta(days=2)).isoformat(), "approval_threshold": 60},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "voting"
        assert response.json()["total_eligible_voters"] == 3
        assert response.json()["approval_threshold"] == 60

        response = await client.post(f"{API}/items/{draft.id}/close")
        assert response.status_code == 200
        assert response.json()["reason"] == "manual"

        response = await client.post(f"{API}/items/{draft.id}/cancel")
        assert response.status_code == 409
        assert response.json()["error"] == "invalid_operation"

        other = await make_item()
        response = await client.post(f"{API}/items/{other.id}/cancel")
        assert response.json()["status"] == "cancelled"

    async def test_sweep_route(self, client, make_item, now):
        expired = await make_item(voting_deadline=now - timedelta(minutes=1))

        response = await client.post(f"{API}/voting/sweep")

        assert response.status_code == 200
        assert [c["item_id"] for c in response.json()["completed"]] == [str(expired.id)]


# =============================================================================
# ERRORS
# =============================================================================


class TestErrors:
    async def test_missing_identity(self, client, make_item):
        item = await make_item()
        response = await client.post(f"{API}/items/{item.id}/votes", json={"choice": "approve"})
        assert response.status_code == 401

    async def test_invalid_choice(self, client, make_board, make_item):
        members = await make_board(1)
        item = await make_item()

        response = await client.post(
            f"{API}/items/{item.id}/votes", json={"choice": "maybe"}, headers=as_voter(members[0])
        )

        assert response.status_code == 422
        assert response.json()["error"] == "invalid_choice"

    async def test_closed_item_conflicts(self, client, make_board, make_item):
        members = await make_board(1)
        item = await make_item(status=ItemStatus.PASSED)

        response = await client.post(
            f"{API}/items/{item.id}/votes", json={"choice": "approve"}, headers=as_voter(members[0])
        )

        assert response.status_code == 409
        assert response.json()["error"] == "voting_closed"

    async def test_unknown_item(self, client, make_board):
        members = await make_board(1)

        response = await client.post(
            f"{API}/items/{uuid4()}/votes", json={"choice": "approve"}, headers=as_voter(members[0])
        )

        assert response.status_code == 404
        assert response.json()["error"] == "item_not_found"

    async def test_rate_limit_returns_retry_after(self, client, pipeline, make_board, make_item):
        members = await make_board(5)
        item = await make_item()
        limit = pipeline.settings.vote_rate_limit_attempts

        for _ in range(limit):
            await client.post(f"{API}/items/{item.id}/votes", json={"choice": "approve"}, headers=as_voter(members[0]))
        response = await client.post(
            f"{API}/items/{item.id}/votes", json={"choice": "approve"}, headers=as_voter(members[0])
        )

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1


# =============================================================================
# OBSERVABILITY
# =============================================================================


class TestObservabilityRoutes:
    async def test_health_and_listener_status(self, client):
        health = (await client.get("/health")).json()
        assert health["listener"] == "listening"

        listener = (await client.get(f"{API}/notifications/listener")).json()
        assert listener["state"] == "listening"
        assert listener["topic"] == "voting_completion"

    async def test_audit_log_filters_by_event_type(self, client, make_board, make_item):
        members = await make_board(5)
        item = await make_item()
        await client.post(f"{API}/items/{item.id}/votes", json={"choice": "approve"}, headers=as_voter(members[0]))

        response = await client.get(f"{API}/audit/log", params={"event_type": "vote_recorded"})

        body = response.json()
        assert response.status_code == 200
        assert body["total"] == 1
        assert body["items"][0]["user_id"] == str(members[0].id)

    async def test_monitoring_health(self, client, make_board, make_item):
        members = await make_board(5)
        item = await make_item()
        await client.post(f"{API}/items/{item.id}/votes", json={"choice": "approve"}, headers=as_voter(members[0]))

        health = (await client.get(f"{API}/monitoring/health")).json()

        assert health["overall_health"] == "healthy"
        assert health["components"]["voting_system"]["sample_count"] == 1
