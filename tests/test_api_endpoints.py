import asyncio
import time

import pytest
from fastapi.testclient import TestClient

import server
from engine.credits import CreditGate
from engine.errors import SessionCancelled
from engine.models import CreditPolicy, Identity, VerificationVerdict
from store.ledger import MemoryLedger

CSV_BODY = b"Name,Email\r\nAlice,a@x.com\r\nBob,not-an-email\r\nCarl,c@x.com\r\n"


class _FakeOracleClient:
    def __init__(self, valid: set[str], calls: list[str]):
        self._valid = valid
        self._calls = calls

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def verify_or_fallback(self, email: str) -> VerificationVerdict:
        self._calls.append(email)
        ok = email in self._valid
        return VerificationVerdict(email=email, syntax=True, mx_record=ok, smtp=ok, verified=ok)


def _setup(monkeypatch, *, ip_credits: int = 1, account_credits: int = 3, valid=None, api_key: str = ""):
    ledger = MemoryLedger()
    gate = CreditGate(ledger, account_starting_credits=account_credits, ip_starting_credits=ip_credits)
    calls: list[str] = []
    valid = {"a@x.com", "c@x.com"} if valid is None else valid

    monkeypatch.setattr(server, "API_KEY", api_key)
    monkeypatch.setattr(server, "BATCH_DELAY_SECONDS", 0)
    monkeypatch.setattr(server, "_get_gate", lambda: gate)
    monkeypatch.setattr(server, "_oracle_client", lambda: _FakeOracleClient(valid, calls))
    return ledger, calls


def test_health() -> None:
    client = TestClient(server.app)
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["service"] == "cleanleads"


def test_ip_prefers_proxy_headers() -> None:
    client = TestClient(server.app)

    assert client.get("/ip", headers={"x-real-ip": "9.9.9.9", "x-forwarded-for": "1.1.1.1"}).json() == {"ip": "9.9.9.9"}
    assert client.get("/ip", headers={"x-forwarded-for": "1.1.1.1, 2.2.2.2"}).json() == {"ip": "1.1.1.1"}
    assert client.get("/ip", headers={"cf-connecting-ip": "3.3.3.3"}).json() == {"ip": "3.3.3.3"}
    assert client.get("/ip", headers={"x-real-ip": "::1"}).json() == {"ip": "127.0.0.1"}


def test_credits_created_on_first_contact(monkeypatch) -> None:
    ledger, _ = _setup(monkeypatch, ip_credits=1)
    client = TestClient(server.app)

    resp = client.get("/credits", headers={"x-real-ip": "5.5.5.5"})

    assert resp.status_code == 200
    assert resp.json() == {"identity": "ip_credits/5.5.5.5", "credits": 1}
    assert ledger.get("ip_credits/5.5.5.5").credits == 1


def test_account_header_requires_api_key(monkeypatch) -> None:
    _setup(monkeypatch, api_key="test-secret")
    client = TestClient(server.app)
    headers = {"X-Account-Id": "alice", "x-real-ip": "5.5.5.5"}

    anonymous = client.get("/credits", headers=headers).json()
    trusted = client.get("/credits", headers={**headers, "Authorization": "Bearer test-secret"}).json()

    assert anonymous["identity"] == "ip_credits/5.5.5.5"
    assert trusted == {"identity": "users/alice", "credits": 3}


def test_clean_returns_filtered_csv(monkeypatch) -> None:
    _setup(monkeypatch, api_key="test-secret")
    client = TestClient(server.app)
    headers = {"X-API-Key": "test-secret", "X-Account-Id": "alice"}

    resp = client.post("/clean", content=CSV_BODY, headers=headers)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert 'filename="clean_leads_lists.csv"' in resp.headers["content-disposition"]
    assert resp.headers["x-credits-consumed"] == "2"
    assert resp.headers["x-credits-remaining"] == "1"
    assert resp.content == b"Name,Email\r\nAlice,a@x.com\r\nCarl,c@x.com\r\n"


def test_clean_out_of_credits_is_402(monkeypatch) -> None:
    ledger, calls = _setup(monkeypatch, ip_credits=1)
    client = TestClient(server.app)

    resp = client.post("/clean", content=CSV_BODY, headers={"x-real-ip": "7.7.7.7"})

    assert resp.status_code == 402
    body = resp.json()
    assert body["error"] == "insufficient_credit"
    assert body["credits_consumed"] == 1
    assert len(calls) == 1
    assert ledger.get("ip_credits/7.7.7.7").credits == 0


def test_clean_preflight_policy_rejects_up_front(monkeypatch) -> None:
    _, calls = _setup(monkeypatch, ip_credits=1)
    client = TestClient(server.app)

    resp = client.post("/clean", params={"policy": "preflight"}, content=CSV_BODY)

    assert resp.status_code == 402
    assert resp.json()["required"] == 2
    assert calls == []


def test_clean_input_shape_errors_are_422(monkeypatch) -> None:
    _setup(monkeypatch, ip_credits=5, valid=set())
    client = TestClient(server.app)

    no_column = client.post("/clean", content=b"Name,Phone\nAlice,555\n")
    no_valid = client.post("/clean", content=b"Email\na@x.com\n")
    empty = client.post("/clean", content=b"   ")

    assert no_column.status_code == 422
    assert no_column.json()["error"] == "no_email_column"
    assert no_valid.status_code == 422
    assert no_valid.json()["error"] == "no_valid_rows"
    assert empty.status_code == 400


def test_clean_rejects_oversized_upload(monkeypatch) -> None:
    _setup(monkeypatch)
    monkeypatch.setattr(server, "MAX_UPLOAD_BYTES", 10)
    client = TestClient(server.app)

    assert client.post("/clean", content=CSV_BODY).status_code == 413


def test_single_verify_consumes_one_credit(monkeypatch) -> None:
    ledger, calls = _setup(monkeypatch, ip_credits=1)
    client = TestClient(server.app)
    headers = {"x-real-ip": "8.8.8.8"}

    first = client.post("/verify", json={"email": " A@X.com "}, headers=headers)
    second = client.post("/verify", json={"email": "c@x.com"}, headers=headers)
    bad = client.post("/verify", json={"email": "nope"}, headers=headers)

    assert first.status_code == 200
    assert first.json()["result"]["verified"] is True
    assert first.json()["result"]["mxRecord"] is True
    assert first.json()["credits"] == 0
    assert second.status_code == 402
    assert bad.status_code == 422
    assert calls == ["a@x.com"]


def test_session_lifecycle(monkeypatch) -> None:
    _setup(monkeypatch, ip_credits=10)

    with TestClient(server.app) as client:
        started = client.post("/sessions", content=CSV_BODY)
        assert started.status_code == 202
        session_id = started.json()["session_id"]

        snapshot = {}
        for _ in range(100):
            snapshot = client.get(f"/sessions/{session_id}").json()
            if snapshot["status"] in ("done", "failed"):
                break
            time.sleep(0.01)

        assert snapshot["status"] == "done"
        assert snapshot["progress"] == 100.0
        assert snapshot["total_emails"] == 2
        assert snapshot["verified_emails"] == 2

        result = client.get(f"/sessions/{session_id}/result")
        assert result.status_code == 200
        assert result.content == b"Name,Email\r\nAlice,a@x.com\r\nCarl,c@x.com\r\n"

        # handed out once
        assert client.get(f"/sessions/{session_id}").status_code == 404


def test_sessions_are_scoped_to_their_owner(monkeypatch) -> None:
    _setup(monkeypatch, ip_credits=10)

    with TestClient(server.app) as client:
        session_id = client.post("/sessions", content=CSV_BODY, headers={"x-real-ip": "1.1.1.1"}).json()["session_id"]
        assert client.get(f"/sessions/{session_id}", headers={"x-real-ip": "2.2.2.2"}).status_code == 404
        assert client.delete("/sessions/unknown").status_code == 404


def test_metrics_requires_key_and_counts_sessions(monkeypatch) -> None:
    _setup(monkeypatch, api_key="test-secret")
    client = TestClient(server.app)

    client.post("/clean", content=CSV_BODY, headers={"X-API-Key": "test-secret", "X-Account-Id": "m"})

    assert client.get("/metrics").status_code == 401
    snapshot = client.get("/metrics", headers={"X-API-Key": "test-secret"}).json()
    assert snapshot["requests_total"] >= 1
    assert snapshot["sessions"].get("ok", 0) >= 1
    assert "/clean" in snapshot["endpoint_latency_ms"]


def test_cancelled_session_counts_spent_credits_in_metrics(monkeypatch) -> None:
    _setup(monkeypatch, ip_credits=10)
    monkeypatch.setattr(server, "BATCH_SIZE", 1)
    monkeypatch.setattr(server, "_METRICS", server.MetricsRegistry())

    class _CancellingOracleClient(_FakeOracleClient):
        def __init__(self, cancel_event):
            super().__init__({"a@x.com", "c@x.com"}, [])
            self._cancel_event = cancel_event

        async def verify_or_fallback(self, email: str) -> VerificationVerdict:
            self._cancel_event.set()
            return await super().verify_or_fallback(email)

    async def scenario():
        cancel = asyncio.Event()
        monkeypatch.setattr(server, "_oracle_client", lambda: _CancellingOracleClient(cancel))
        return await server._run_clean(
            CSV_BODY,
            Identity.ip("4.4.4.4"),
            CreditPolicy.per_address,
            cancel_event=cancel,
        )

    with pytest.raises(SessionCancelled):
        asyncio.run(scenario())

    snapshot = server._METRICS.snapshot()
    assert snapshot["sessions"] == {"cancelled": 1}
    assert snapshot["credits_consumed"] == 1
