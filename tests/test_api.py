"""Tests for the HTTP API.

Runs the FastAPI app in-process over httpx's ASGI transport against the
in-memory engine from conftest.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta

import httpx
import pytest

from ballotbox.api.config import Settings
from ballotbox.api.main import change_stream, create_app, limiter
from ballotbox.shared.errors import StoreUnavailableError
from ballotbox.shared.models import ChangeKind

API = "/api/v1"


async def create_event(client: httpx.AsyncClient, clock, **overrides) -> dict:
    payload = {
        "name": "Best Poster",
        "category": "posters",
        "vote_mode": "single",
        "start_time": clock.now.isoformat(),
        "end_time": (clock.now + timedelta(hours=1)).isoformat(),
    }
    payload.update(overrides)
    response = await client.post(f"{API}/events", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


async def open_event(client: httpx.AsyncClient, clock, item_count: int = 2, codes: int = 1, **overrides):
    """Create, populate and activate an event. Returns (event, items, codes)."""
    event = await create_event(client, clock, **overrides)
    items = []
    for i in range(item_count):
        response = await client.post(f"{API}/events/{event['id']}/items", json={"title": f"Poster {i + 1}"})
        assert response.status_code == 201
        items.append(response.json())

    response = await client.put(f"{API}/events/{event['id']}/status", json={"status": "active"})
    assert response.status_code == 200

    issued = []
    if codes:
        response = await client.post(f"{API}/events/{event['id']}/credentials", json={"count": codes})
        assert response.status_code == 201
        issued = response.json()["codes"]
    return event, items, issued


@pytest.mark.asyncio
class TestEventEndpoints:
    """Event administration routes."""

    async def test_create_and_get_event(self, api_client, clock):
        event = await create_event(api_client, clock, vote_mode="multiple", number_of_choices=2)

        assert event["status"] == "draft"
        assert event["accepting_submissions"] is False

        response = await api_client.get(f"{API}/events/{event['id']}")
        assert response.status_code == 200
        assert response.json()["number_of_choices"] == 2

        response = await api_client.get(f"{API}/events")
        assert [e["id"] for e in response.json()] == [event["id"]]

    async def test_invalid_event_is_422(self, api_client, clock):
        response = await api_client.post(f"{API}/events", json={
            "name": "Backwards",
            "start_time": clock.now.isoformat(),
            "end_time": (clock.now - timedelta(hours=1)).isoformat(),
        })

        assert response.status_code == 422
        assert response.json()["error"] == "invalid_event"

    async def test_missing_fields_are_422(self, api_client):
        response = await api_client.post(f"{API}/events", json={"name": "No schedule"})
        assert response.status_code == 422

    async def test_unknown_event_is_404(self, api_client):
        response = await api_client.get(f"{API}/events/missing")

        assert response.status_code == 404
        assert response.json()["error"] == "event_not_found"

    async def test_patch_draft_event(self, api_client, clock):
        event = await create_event(api_client, clock)

        response = await api_client.patch(f"{API}/events/{event['id']}", json={"name": "Renamed"})

        assert response.status_code == 200
        assert response.json()["name"] == "Renamed"

    async def test_patch_active_event_is_409(self, api_client, clock):
        event, _, _ = await open_event(api_client, clock)

        response = await api_client.patch(f"{API}/events/{event['id']}", json={"name": "Renamed"})

        assert response.status_code == 409
        assert response.json()["error"] == "event_not_editable"

    async def test_invalid_transition_is_409(self, api_client, clock):
        event = await create_event(api_client, clock)

        response = await api_client.put(f"{API}/events/{event['id']}/status", json={"status": "paused"})

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_transition"

    async def test_items_and_removal(self, api_client, clock):
        event = await create_event(api_client, clock)
        first = (await api_client.post(f"{API}/events/{event['id']}/items", json={"title": "A"})).json()
        second = (await api_client.post(f"{API}/events/{event['id']}/items", json={"title": "B"})).json()

        response = await api_client.delete(f"{API}/events/{event['id']}/items/{first['id']}")
        assert response.status_code == 204

        listed = (await api_client.get(f"{API}/events/{event['id']}/items")).json()
        assert [item["id"] for item in listed] == [second["id"]]


@pytest.mark.asyncio
class TestCredentialEndpoints:
    """Voter code routes."""

    async def test_issue_and_list(self, api_client, clock):
        event = await create_event(api_client, clock)

        response = await api_client.post(f"{API}/events/{event['id']}/credentials", json={"count": 5})

        assert response.status_code == 201
        body = response.json()
        assert body["count"] == 5
        assert len(set(body["codes"])) == 5

        listed = (await api_client.get(f"{API}/events/{event['id']}/credentials")).json()
        assert sorted(c["code"] for c in listed) == sorted(body["codes"])
        assert not any(c["used"] for c in listed)

    @pytest.mark.parametrize("count", [0, 1001])
    async def test_batch_size_out_of_range(self, api_client, clock, count):
        event = await create_event(api_client, clock)

        response = await api_client.post(f"{API}/events/{event['id']}/credentials", json={"count": count})

        assert response.status_code == 422
        assert response.json()["error"] == "invalid_batch"

    async def test_revoke(self, api_client, clock):
        event, items, [code] = await open_event(api_client, clock)

        response = await api_client.delete(f"{API}/events/{event['id']}/credentials/{code}")
        assert response.status_code == 204

        response = await api_client.delete(f"{API}/events/{event['id']}/credentials/{code}")
        assert response.status_code == 409


@pytest.mark.asyncio
class TestBallotEndpoint:
    """POST /events/{id}/ballots and its error mapping."""

    async def test_successful_ballot(self, api_client, clock):
        event, items, [code] = await open_event(api_client, clock)

        response = await api_client.post(
            f"{API}/events/{event['id']}/ballots",
            json={"code": code, "item_ids": [items[1]["id"]]}
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "counted"
        assert body["item_ids"] == [items[1]["id"]]
        assert body["voter_code"] == code

        tally = (await api_client.get(f"{API}/events/{event['id']}/tally")).json()
        assert tally["total_votes"] == 1
        assert tally["entries"][0]["item_id"] == items[1]["id"]

    async def test_reused_code_is_409(self, api_client, clock):
        event, items, [code] = await open_event(api_client, clock)
        ballot = {"code": code, "item_ids": [items[0]["id"]]}
        await api_client.post(f"{API}/events/{event['id']}/ballots", json=ballot)

        response = await api_client.post(f"{API}/events/{event['id']}/ballots", json=ballot)

        assert response.status_code == 409
        assert response.json()["error"] == "already_used"

    async def test_unknown_code_is_404(self, api_client, clock):
        event, items, _ = await open_event(api_client, clock)

        response = await api_client.post(
            f"{API}/events/{event['id']}/ballots",
            json={"code": "NOPE0000", "item_ids": [items[0]["id"]]}
        )

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    async def test_missing_code_is_403(self, api_client, clock):
        event, items, _ = await open_event(api_client, clock)

        response = await api_client.post(
            f"{API}/events/{event['id']}/ballots",
            json={"item_ids": [items[0]["id"]]}
        )

        assert response.status_code == 403
        assert response.json()["error"] == "credential_required"

    async def test_anonymous_ballot(self, api_client, clock):
        event, items, _ = await open_event(api_client, clock, codes=0, allow_anonymous=True)

        response = await api_client.post(
            f"{API}/events/{event['id']}/ballots",
            json={"item_ids": [items[0]["id"]]}
        )

        assert response.status_code == 201
        assert response.json()["voter_code"] == "public"

    async def test_invalid_ballot_is_422_with_reason(self, api_client, clock):
        event, items, [code] = await open_event(api_client, clock)

        response = await api_client.post(
            f"{API}/events/{event['id']}/ballots",
            json={"code": code, "item_ids": [items[0]["id"], items[1]["id"]]}
        )

        assert response.status_code == 422
        assert response.json()["reason"] == "wrong_count"

    async def test_paused_event_is_423(self, api_client, clock):
        event, items, [code] = await open_event(api_client, clock)
        await api_client.put(f"{API}/events/{event['id']}/status", json={"status": "paused"})

        response = await api_client.post(
            f"{API}/events/{event['id']}/ballots",
            json={"code": code, "item_ids": [items[0]["id"]]}
        )

        assert response.status_code == 423
        assert response.json()["status"] == "paused"

    async def test_store_unavailable_is_503(self, api_client, clock, store, monkeypatch):
        event, items, [code] = await open_event(api_client, clock)

        async def unavailable(event_id, code, now):
            raise StoreUnavailableError("consume failed: timeout")

        monkeypatch.setattr(store, "consume_credential", unavailable)

        response = await api_client.post(
            f"{API}/events/{event['id']}/ballots",
            json={"code": code, "item_ids": [items[0]["id"]]}
        )

        assert response.status_code == 503
        assert response.json()["credential_consumed"] is False

    async def test_partial_commit_is_500(self, api_client, clock, store, monkeypatch):
        event, items, [code] = await open_event(api_client, clock)

        async def broken_increment(event_id, item_ids):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(store, "increment_items", broken_increment)

        response = await api_client.post(
            f"{API}/events/{event['id']}/ballots",
            json={"code": code, "item_ids": [items[0]["id"]]}
        )

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "partial_commit"
        assert body["credential_consumed"] is True
        assert "administrator" in body["detail"]

    async def test_unknown_commit_outcome_is_503_with_null_consumption(self, api_client, clock, store, monkeypatch):
        event, items, [code] = await open_event(api_client, clock)
        original = store.unit_of_work

        @asynccontextmanager
        async def commit_fails(event_id):
            async with original(event_id) as unit:
                unit.atomic = True
                yield unit
            raise StoreUnavailableError("submission failed: connection lost during COMMIT")

        monkeypatch.setattr(store, "unit_of_work", commit_fails)

        response = await api_client.post(
            f"{API}/events/{event['id']}/ballots",
            json={"code": code, "item_ids": [items[0]["id"]]}
        )

        assert response.status_code == 503
        body = response.json()
        assert body["credential_consumed"] is None
        assert "may or may not" in body["detail"]

    async def test_rate_limit_comes_from_app_settings(self, engine, clock):
        limiter.reset()
        app = create_app(engine=engine, config=Settings(RUN_SESSION_MONITOR=False, RATE_LIMIT="2/minute"))
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            event, items, codes = await open_event(client, clock, codes=3)
            statuses = []
            for code in codes:
                response = await client.post(
                    f"{API}/events/{event['id']}/ballots",
                    json={"code": code, "item_ids": [items[0]["id"]]}
                )
                statuses.append(response.status_code)
        limiter.reset()

        assert statuses == [201, 201, 429]


@pytest.mark.asyncio
class TestResultEndpoints:
    """Results, reset, health and metrics."""

    async def test_results_with_winners(self, api_client, clock):
        event, items, codes = await open_event(api_client, clock, item_count=3, codes=3, number_of_winners=2)
        for code, item in zip(codes, [items[2], items[2], items[0]]):
            await api_client.post(
                f"{API}/events/{event['id']}/ballots",
                json={"code": code, "item_ids": [item["id"]]}
            )
        await api_client.put(f"{API}/events/{event['id']}/status", json={"status": "ended"})

        results = (await api_client.get(f"{API}/events/{event['id']}/results")).json()

        assert results["is_final"] is True
        assert results["total_votes"] == 3
        assert [w["item_id"] for w in results["winners"]] == [items[2]["id"], items[0]["id"]]
        assert results["entries"][0]["share"] == pytest.approx(66.67)

    async def test_reset(self, api_client, clock):
        event, items, [code] = await open_event(api_client, clock)
        await api_client.post(
            f"{API}/events/{event['id']}/ballots",
            json={"code": code, "item_ids": [items[0]["id"]]}
        )

        response = await api_client.post(f"{API}/events/{event['id']}/reset")

        assert response.status_code == 204
        tally = (await api_client.get(f"{API}/events/{event['id']}/tally")).json()
        assert tally["total_votes"] == 0

    async def test_health(self, api_client):
        response = await api_client.get(f"{API}/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["services"] == {"store": "connected", "cache": "connected"}

    async def test_metrics(self, api_client):
        await api_client.get(f"{API}/health")

        response = await api_client.get("/metrics")

        assert response.status_code == 200
        assert "http_request_duration_seconds" in response.text

    async def test_stream_unknown_event_is_404(self, api_client):
        response = await api_client.get(f"{API}/events/missing/stream")
        assert response.status_code == 404


@pytest.mark.asyncio
class TestChangeStream:
    """Server-sent events produced for the live results page."""

    async def test_stream_sends_notices_and_heartbeats(self, engine, make_event):
        event, _ = await make_event()
        subscription = engine.notifier.subscription(event.id)
        stream = change_stream(subscription, heartbeat=0.05)

        assert await stream.__anext__() == ": connected\n\n"

        engine.notifier.publish(event.id, ChangeKind.TALLY)
        chunk = await asyncio.wait_for(stream.__anext__(), timeout=1)
        assert chunk.startswith("event: tally\ndata: ")
        assert event.id in chunk

        assert await asyncio.wait_for(stream.__anext__(), timeout=1) == ": keep-alive\n\n"

        await stream.aclose()
        assert engine.notifier.subscriber_count == 0
