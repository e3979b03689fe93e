import hashlib
import hmac
import json
import time

import pytest
from fastapi.testclient import TestClient

import billing
from auth import issue_identity_token
from config import Settings, get_settings
from database import Base, build_engine, get_db, make_session_factory
from llm_client import LLMFailure, LLMSuccess
from main import app, get_llm
from periods import local_today
from services import DashboardService


class FakeLLM:
    def __init__(self, answer=None) -> None:
        self.answer = answer
        self.prompts = []

    @property
    def is_configured(self) -> bool:
        return self.answer is not None

    def query(self, prompt, context=None):
        self.prompts.append(prompt)
        if self.answer is None:
            return LLMFailure("not_configured")
        return LLMSuccess(self.answer)

    def query_structured(self, prompt, schema, context=None):
        return LLMFailure("not_configured")


@pytest.fixture()
def llm():
    return FakeLLM()


@pytest.fixture()
def client(llm):
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    SessionLocal = make_session_factory(engine)

    def override_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_llm] = lambda: llm
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(user_id="user-a") -> dict:
    return {"Authorization": f"Bearer {issue_identity_token(user_id)}"}


def create_account(client, balance_cents=10_000, user_id="user-a") -> dict:
    resp = client.post(
        "/accounts",
        json={"name": "Main", "type": "checking", "balance_cents": balance_cents},
        headers=auth(user_id),
    )
    assert resp.status_code == 201
    return resp.json()


def test_health_needs_no_token(client) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_missing_or_bad_token_is_unauthorized(client) -> None:
    assert client.get("/accounts").status_code == 401
    resp = client.get("/accounts", headers={"Authorization": "Bearer forged"})
    assert resp.status_code == 401
    assert resp.json() == {"error": "Unauthorized"}


def test_validation_errors_are_400_with_details(client) -> None:
    resp = client.post("/accounts", json={"name": "Main"}, headers=auth())

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "Invalid input"
    assert any(d["loc"][-1] == "type" for d in body["details"])


def test_transaction_moves_balance_and_version(client) -> None:
    account = create_account(client)
    resp = client.post(
        "/transactions",
        json={
            "account_id": account["id"],
            "description": "Groceries",
            "amount_cents": 3_000,
            "type": "expense",
            "date": local_today().isoformat(),
        },
        headers=auth(),
    )
    assert resp.status_code == 201
    assert resp.json()["amount_cents"] == -3_000

    fetched = client.get(f"/accounts/{account['id']}", headers=auth()).json()
    assert fetched["balance_cents"] == 7_000
    assert fetched["version"] == 2

    stale = client.put(
        f"/accounts/{account['id']}",
        json={"name": "Renamed", "expected_version": 1},
        headers=auth(),
    )
    assert stale.status_code == 409

    listing = client.get("/transactions", headers=auth()).json()
    assert listing["pagination"] == {"page": 1, "limit": 50, "total": 1, "pages": 1}

    summary = client.get("/dashboard/summary", headers=auth()).json()
    assert summary["today_spending_cents"] == 3_000
    assert summary["cash_cents"] == 7_000


def test_other_users_rows_are_not_found(client) -> None:
    account = create_account(client)

    resp = client.get(f"/accounts/{account['id']}", headers=auth("user-b"))
    assert resp.status_code == 404
    assert resp.json() == {"error": "Account not found"}

    resp = client.post(
        "/transactions",
        json={
            "account_id": account["id"],
            "description": "Sneaky",
            "amount_cents": 100,
            "type": "expense",
            "date": local_today().isoformat(),
        },
        headers=auth("user-b"),
    )
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid account"}


def test_list_limit_out_of_range_is_rejected(client) -> None:
    resp = client.get("/transactions?limit=500", headers=auth())
    assert resp.status_code == 400
    resp = client.get("/transactions?sortBy=balance", headers=auth())
    assert resp.status_code == 400


def test_budget_duplicate_is_rejected(client) -> None:
    categories = client.get("/categories", headers=auth()).json()
    assert len(categories) == 10
    body = {
        "category_id": categories[0]["id"],
        "name": "Monthly",
        "amount_cents": 40_000,
        "period": "monthly",
        "start_date": local_today().isoformat(),
    }

    first = client.post("/budgets", json=body, headers=auth())
    assert first.status_code == 201
    assert first.json()["spent_cents"] == 0

    second = client.post("/budgets", json=body, headers=auth())
    assert second.status_code == 400


def test_goal_contribution_endpoint(client) -> None:
    goal = client.post(
        "/savings-goals",
        json={"name": "Trip", "target_amount_cents": 1_000},
        headers=auth(),
    ).json()

    resp = client.post(
        f"/savings-goals/{goal['id']}?action=contribute",
        json={"amount_cents": 1_000},
        headers=auth(),
    )
    assert resp.status_code == 200
    assert resp.json()["is_completed"] is True

    detail = client.get(f"/savings-goals/{goal['id']}", headers=auth()).json()
    assert [c["amount_cents"] for c in detail["contributions"]] == [1_000]

    resp = client.post(
        f"/savings-goals/{goal['id']}?action=contribute",
        json={"amount_cents": 0},
        headers=auth(),
    )
    assert resp.status_code == 400


def test_categorize_falls_back_to_keywords(client) -> None:
    resp = client.post(
        "/ai/categorize",
        json={"description": "Uber ride to airport", "amount_cents": -2_350},
        headers=auth(),
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["category"] == "Transport"
    assert body["ai_categorized"] is False
    categories = {c["name"]: c["id"] for c in client.get("/categories", headers=auth()).json()}
    assert body["category_id"] == categories["Transportation"]


def test_categorize_batch_limits(client) -> None:
    items = [{"description": "Netflix", "amount_cents": -1_599}] * 3
    resp = client.post("/ai/categorize/batch", json={"items": items}, headers=auth())
    assert [r["category"] for r in resp.json()["results"]] == ["Entertainment"] * 3

    resp = client.post("/ai/categorize/batch", json={"items": items * 20}, headers=auth())
    assert resp.status_code == 400


def test_insights_generate_and_mark_read(client) -> None:
    insights = client.get("/ai/insights", headers=auth()).json()
    assert insights[0]["title"] == "Start Budgeting Today"
    assert insights[0]["priority"] == "high"

    resp = client.post(f"/ai/insights/{insights[0]['id']}/read", headers=auth())
    assert resp.json()["is_read"] is True

    assert client.get("/ai/insights?type=bogus", headers=auth()).status_code == 400


def test_query_fails_with_500_when_llm_unavailable(client) -> None:
    resp = client.post("/ai/query", json={"query": "How much did I spend?"}, headers=auth())

    assert resp.status_code == 500
    assert resp.json() == {"error": "Internal server error"}


def test_query_answers_with_context(client, llm) -> None:
    llm.answer = "You spent $30.00 this month."
    create_account(client)

    resp = client.post("/ai/query", json={"query": "How much did I spend?"}, headers=auth())

    assert resp.status_code == 200
    body = resp.json()
    assert body["response"] == "You spent $30.00 this month."
    assert body["intent"] == "spending_analysis"
    assert body["context"]["total_balance_cents"] == 10_000
    assert "How much did I spend?" in llm.prompts[0]


def test_unexpected_value_error_is_not_echoed(client, monkeypatch) -> None:
    def boom(self, *, today=None):
        raise ValueError("invalid literal for int() with base 10: 'secret'")

    monkeypatch.setattr(DashboardService, "summary", boom)

    resp = client.get("/dashboard/summary", headers=auth())

    assert resp.status_code == 500
    assert resp.json() == {"error": "Internal server error"}


def stripe_settings(monkeypatch, secret="whsec_api") -> str:
    settings = Settings(**{**vars(get_settings()), "stripe_webhook_secret": secret})
    monkeypatch.setattr(billing, "get_settings", lambda: settings)
    return secret


def stripe_signature(payload: str, secret: str) -> str:
    timestamp = int(time.time())
    digest = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


def test_webhook_rejects_bad_signature(client, monkeypatch) -> None:
    stripe_settings(monkeypatch)

    resp = client.post(
        "/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1,v1=bad"}
    )

    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid signature"}


def test_webhook_records_subscription(client, monkeypatch) -> None:
    secret = stripe_settings(monkeypatch)
    payload = json.dumps(
        {
            "id": "evt_1",
            "object": "event",
            "type": "customer.subscription.created",
            "data": {
                "object": {
                    "id": "sub_1",
                    "object": "subscription",
                    "customer": "cus_1",
                    "status": "active",
                    "metadata": {"userId": "user-a"},
                }
            },
        }
    )

    resp = client.post(
        "/webhooks/stripe",
        content=payload.encode("utf-8"),
        headers={"stripe-signature": stripe_signature(payload, secret)},
    )

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "type": "customer.subscription.created"}
    subs = client.get("/subscriptions", headers=auth()).json()
    assert [s["status"] for s in subs] == ["active"]


def test_webhook_with_malformed_timestamp_hides_details(client, monkeypatch) -> None:
    secret = stripe_settings(monkeypatch)
    payload = json.dumps(
        {
            "id": "evt_2",
            "object": "event",
            "type": "customer.subscription.updated",
            "data": {
                "object": {
                    "id": "sub_2",
                    "object": "subscription",
                    "status": "trialing",
                    "trial_end": "soon",
                    "metadata": {"userId": "user-a"},
                }
            },
        }
    )

    resp = client.post(
        "/webhooks/stripe",
        content=payload.encode("utf-8"),
        headers={"stripe-signature": stripe_signature(payload, secret)},
    )

    assert resp.status_code == 500
    assert resp.json() == {"error": "Internal server error"}
