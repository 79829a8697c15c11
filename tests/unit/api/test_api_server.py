from __future__ import annotations

import asyncio
from collections.abc import Iterator

import pytest
from starlette.testclient import TestClient

from skillops.api import BearerTokenAuthProvider, SkillOpsAPI
from skillops.errors import SkillError
from skillops.skills import SkillResult

STAFF = {"Authorization": "Bearer staff-token-1"}
SCHEDULER = {"Authorization": "Bearer sched-token-1"}


@pytest.fixture
def client(harness) -> Iterator[TestClient]:  # type: ignore[no-untyped-def]
    asyncio.run(harness.ledger.open_account("Acme", account_id="acct-1", initial_credits=100))
    asyncio.run(harness.ledger.open_account("Broke", account_id="acct-broke", initial_credits=50))
    api = SkillOpsAPI(
        engine=harness.engine,
        dispatcher=harness.dispatcher,
        ledger=harness.ledger,
        auth_provider=BearerTokenAuthProvider(staff_tokens=["staff-token-1"], scheduler_tokens=["sched-token-1"]),
    )
    with TestClient(api.app) as test_client:
        yield test_client


def test_health_needs_no_auth(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_missing_and_invalid_tokens_are_rejected(client: TestClient) -> None:
    missing = client.get("/api/executions")
    invalid = client.get("/api/executions", headers={"Authorization": "Bearer nope"})

    assert missing.status_code == 401
    assert missing.json()["message"] == "missing_bearer"
    assert invalid.status_code == 401
    assert invalid.json()["message"] == "invalid_bearer"


def test_scheduler_token_cannot_use_staff_routes(client: TestClient) -> None:
    response = client.post("/api/skills/listing-writer/execute", json={"account_id": "acct-1"}, headers=SCHEDULER)
    assert response.status_code == 403


def test_execute_returns_result_and_charges(client: TestClient) -> None:
    response = client.post(
        "/api/skills/market-report/execute",
        json={"account_id": "acct-1", "input": {"zip": "94110"}},
        headers=STAFF,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["output"] == {"ok": True}
    assert body["credits_charged"] == 75
    balance = client.get("/api/accounts/acct-1/balance", headers=STAFF).json()
    assert balance["balance"] == 25
    assert balance["lifetime_spent"] == 75


def test_execute_insufficient_credits_is_402(client: TestClient) -> None:
    response = client.post("/api/skills/market-report/execute", json={"account_id": "acct-broke"}, headers=STAFF)

    assert response.status_code == 402
    body = response.json()
    assert body["error"] == "insufficient_credits"
    assert body["required"] == 75
    assert body["available"] == 50
    assert client.get("/api/executions", headers=STAFF).json()["executions"] == []


def test_execute_unknown_skill_is_404(client: TestClient) -> None:
    response = client.post("/api/skills/nope/execute", json={"account_id": "acct-1"}, headers=STAFF)
    assert response.status_code == 404
    assert response.json()["error"] == "unknown_skill"


def test_execute_validation_errors_are_422(client: TestClient) -> None:
    missing_account = client.post("/api/skills/listing-writer/execute", json={}, headers=STAFF)
    bad_json = client.post(
        "/api/skills/listing-writer/execute",
        content=b"{not json",
        headers={**STAFF, "Content-Type": "application/json"},
    )

    assert missing_account.status_code == 422
    assert missing_account.json()["error"] == "validation_error"
    assert bad_json.status_code == 422


def test_failed_execution_is_502_and_retry_is_202(client: TestClient, harness) -> None:  # type: ignore[no-untyped-def]
    harness.invoker.outcomes["listing-writer"] = SkillError("model refused")
    failed = client.post("/api/skills/listing-writer/execute", json={"account_id": "acct-1"}, headers=STAFF)

    assert failed.status_code == 502
    execution_id = failed.json()["execution_id"]

    harness.invoker.outcomes["listing-writer"] = SkillResult(output={"text": "ok"})
    retried = client.post(f"/api/executions/{execution_id}", json={"action": "retry"}, headers=STAFF)

    assert retried.status_code == 202
    body = retried.json()
    assert body["retry_of"] == execution_id
    assert body["retry_count"] == 1
    assert body["triggered_by"] == "staff:staff-"


def test_execution_state_conflicts_are_409(client: TestClient) -> None:
    done = client.post("/api/skills/listing-writer/execute", json={"account_id": "acct-1"}, headers=STAFF).json()

    cancel = client.delete(f"/api/executions/{done['execution_id']}", headers=STAFF)
    retry = client.post(f"/api/executions/{done['execution_id']}", json={"action": "retry"}, headers=STAFF)
    bad_action = client.post(f"/api/executions/{done['execution_id']}", json={"action": "explode"}, headers=STAFF)

    assert cancel.status_code == 409
    assert cancel.json()["status"] == "completed"
    assert retry.status_code == 409
    assert bad_action.status_code == 422


def test_get_and_list_executions(client: TestClient) -> None:
    client.post("/api/skills/listing-writer/execute", json={"account_id": "acct-1"}, headers=STAFF)
    done = client.post("/api/skills/free-check/execute", json={"account_id": "acct-1"}, headers=STAFF).json()

    fetched = client.get(f"/api/executions/{done['execution_id']}", headers=STAFF)
    filtered = client.get("/api/executions", params={"skill_id": "free-check"}, headers=STAFF)
    missing = client.get("/api/executions/missing", headers=STAFF)

    assert fetched.status_code == 200
    assert fetched.json()["skill_id"] == "free-check"
    assert [item["id"] for item in filtered.json()["executions"]] == [done["execution_id"]]
    assert missing.status_code == 404


def test_schedule_lifecycle(client: TestClient) -> None:
    created = client.post(
        "/api/schedules",
        json={
            "agent_slug": "listing-writer",
            "account_id": "acct-1",
            "schedule_type": "interval",
            "interval_minutes": 30,
        },
        headers=STAFF,
    )
    assert created.status_code == 201
    schedule = created.json()
    assert schedule["created_by"] == "staff:staff-"

    listed = client.get("/api/schedules", params={"active": "true"}, headers=STAFF).json()["schedules"]
    deleted = client.delete(f"/api/schedules/{schedule['id']}", headers=STAFF)
    inactive = client.get("/api/schedules", params={"active": "false"}, headers=STAFF).json()["schedules"]

    assert [item["id"] for item in listed] == [schedule["id"]]
    assert deleted.status_code == 200
    assert deleted.json()["is_active"] is False
    assert [item["id"] for item in inactive] == [schedule["id"]]
    assert client.delete("/api/schedules/missing", headers=STAFF).status_code == 404


def test_invalid_schedule_is_422(client: TestClient) -> None:
    response = client.post(
        "/api/schedules",
        json={
            "agent_slug": "listing-writer",
            "account_id": "acct-1",
            "schedule_type": "interval",
            "interval_minutes": 30,
            "cron_expression": "0 * * * *",
        },
        headers=STAFF,
    )
    assert response.status_code == 422
    assert response.json()["error"] == "schedule_config_error"


def test_scheduler_can_tick_and_send_events(client: TestClient) -> None:
    client.post(
        "/api/schedules",
        json={"agent_slug": "listing-writer", "account_id": "acct-1", "schedule_type": "interval", "interval_minutes": 15},
        headers=STAFF,
    )
    client.post(
        "/api/schedules",
        json={
            "agent_slug": "free-check",
            "account_id": "acct-1",
            "schedule_type": "event",
            "event_trigger": "listing.created",
        },
        headers=STAFF,
    )

    tick = client.post("/api/dispatcher/tick", json={"wait": True}, headers=SCHEDULER)
    event = client.post("/api/events/listing.created", json={"listing_id": "L-1"}, headers=SCHEDULER)

    assert tick.status_code == 200
    assert len(tick.json()["enqueued"]) == 1
    assert event.status_code == 202
    executions = event.json()["executions"]
    assert len(executions) == 1
    assert executions[0]["input"] == {"listing_id": "L-1"}
    assert executions[0]["trigger_source"] == "event"


def test_add_credits_is_idempotent(client: TestClient) -> None:
    payload = {"amount": 40, "description": "Stripe", "idempotency_key": "pi_1"}

    first = client.post("/api/accounts/acct-1/credits", json=payload, headers=STAFF)
    second = client.post("/api/accounts/acct-1/credits", json=payload, headers=STAFF)

    assert first.status_code == 201
    assert first.json()["new_balance"] == 140
    assert second.status_code == 200
    assert second.json()["replayed"] is True
    history = client.get("/api/accounts/acct-1/transactions", headers=STAFF).json()["transactions"]
    assert [item["amount"] for item in history] == [40, 100]


def test_adjustment_and_invalid_amount(client: TestClient) -> None:
    adjusted = client.post(
        "/api/accounts/acct-1/credits", json={"amount": -30, "type": "adjustment"}, headers=STAFF
    )
    zero = client.post("/api/accounts/acct-1/credits", json={"amount": 0}, headers=STAFF)
    overdraw = client.post(
        "/api/accounts/acct-1/credits", json={"amount": -500, "type": "adjustment"}, headers=STAFF
    )

    assert adjusted.status_code == 201
    assert adjusted.json()["new_balance"] == 70
    assert adjusted.json()["transaction"]["type"] == "adjustment"
    assert zero.status_code == 422
    assert overdraw.status_code == 402


def test_transactions_filter_by_type(client: TestClient) -> None:
    client.post("/api/skills/listing-writer/execute", json={"account_id": "acct-1"}, headers=STAFF)

    redemptions = client.get(
        "/api/accounts/acct-1/transactions", params={"type": "redemption"}, headers=STAFF
    ).json()["transactions"]

    assert [item["amount"] for item in redemptions] == [-25]


def test_usage_and_unknown_account(client: TestClient) -> None:
    client.post("/api/skills/listing-writer/execute", json={"account_id": "acct-1"}, headers=STAFF)

    usage = client.get("/api/accounts/acct-1/usage", headers=STAFF)
    missing = client.get("/api/accounts/ghost/balance", headers=STAFF)

    assert usage.status_code == 200
    assert usage.json()["total_credits"] == 25
    assert usage.json()["by_skill"]["listing-writer"]["executions"] == 1
    assert missing.status_code == 404
    assert missing.json()["entity"] == "account"


def test_usage_window_accepts_naive_and_rejects_invalid_times(client: TestClient) -> None:
    client.post("/api/skills/listing-writer/execute", json={"account_id": "acct-1"}, headers=STAFF)

    naive = client.get("/api/accounts/acct-1/usage", params={"start": "2025-01-01T00:00:00"}, headers=STAFF)
    invalid = client.get("/api/accounts/acct-1/usage", params={"start": "yesterday"}, headers=STAFF)

    assert naive.status_code == 200
    assert naive.json()["total_credits"] == 25
    assert invalid.status_code == 422
    assert invalid.json()["error"] == "validation_error"


def test_refund_goes_through_redemption(client: TestClient) -> None:
    client.post("/api/skills/listing-writer/execute", json={"account_id": "acct-1"}, headers=STAFF)
    redemption = client.get(
        "/api/accounts/acct-1/transactions", params={"type": "redemption"}, headers=STAFF
    ).json()["transactions"][0]
    refund = {"type": "refund", "transaction_id": redemption["id"]}

    first = client.post("/api/accounts/acct-1/credits", json=refund, headers=STAFF)
    second = client.post("/api/accounts/acct-1/credits", json=refund, headers=STAFF)
    free_standing = client.post("/api/accounts/acct-1/credits", json={"type": "refund", "amount": 500}, headers=STAFF)
    other_account = client.post("/api/accounts/acct-broke/credits", json=refund, headers=STAFF)

    assert first.status_code == 201
    assert first.json()["new_balance"] == 100
    assert first.json()["transaction"]["type"] == "refund"
    assert second.status_code == 200
    assert second.json()["replayed"] is True
    assert free_standing.status_code == 422
    assert other_account.status_code == 404
    assert client.get("/api/accounts/acct-1/balance", headers=STAFF).json()["balance"] == 100
