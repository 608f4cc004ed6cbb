"""End-to-end guard order and quota behaviour of /api/analyze."""

from fastapi.testclient import TestClient

from backend.core.metrics import quota_denied_total, ratelimit_block_total, usage_record_failures_total
from backend.core.services import build_services
from backend.features.analysis.repository import InMemoryAnalysisRepository
from backend.features.plans.service import DEFAULT_PLANS, build_policies
from backend.main import create_app
from backend.tests.mocks import BrokenQuotaStore, ResetOnIncrementStore, auth_header


def analyze(client, token, code, language="python", **extra):
    return client.post(
        "/api/analyze",
        headers=auth_header(token),
        json={"code": code, "language": language, **extra},
    )


def test_free_user_limited_to_five_analyses_per_day(client, quota_store, fake_now):
    for i in range(5):
        resp = analyze(client, "free-token", f"print({i})")
        assert resp.status_code == 201, resp.text
        assert resp.json()["data"]["cached"] is False

    denied = analyze(client, "free-token", "print('sixth')")
    assert denied.status_code == 429
    body = denied.json()
    assert body["success"] is False
    assert body["code"] == "limit_exceeded"
    assert body["error"] == "Daily analysis limit reached (5 analyses/day). Please upgrade your plan."
    # 12:00 UTC, so the daily counter resets in twelve hours
    assert denied.headers["Retry-After"] == "43200"
    assert quota_denied_total.value({"feature": "analyses", "reason": "limit_reached"}) == 1

    fake_now.advance(days=1)
    assert analyze(client, "free-token", "print('tomorrow')").status_code == 201


def test_denied_request_is_not_counted(client, quota_store):
    for i in range(5):
        analyze(client, "free-token", f"x = {i}")
    analyze(client, "free-token", "x = 99")
    analyze(client, "free-token", "x = 100")

    assert quota_store._counts[("user-free", "2025-01-15")] == 5


def test_cached_analysis_is_free(client, quota_store, generator):
    first = analyze(client, "standard-token", "def add(a, b):\n    return a + b")
    second = analyze(client, "standard-token", "def add(a, b):\n    return a + b")

    assert first.status_code == 201
    assert second.status_code == 200
    assert second.json()["data"]["cached"] is True
    assert second.json()["data"]["analysisId"] == first.json()["data"]["analysisId"]
    assert generator.calls == 1
    assert quota_store._counts[("user-standard", "2025-01-15")] == 1


def test_new_level_for_same_code_is_charged(client, quota_store):
    first = analyze(client, "standard-token", "let x = 1;", language="javascript")
    second = analyze(client, "standard-token", "let x = 1;", language="javascript", level="advanced")

    assert second.status_code == 201
    assert second.json()["data"]["explanation"]["level"] == "advanced"
    assert second.json()["data"]["analysisId"] == first.json()["data"]["analysisId"]
    assert quota_store._counts[("user-standard", "2025-01-15")] == 2


def test_quota_is_checked_before_cache_lookup(client, generator):
    for i in range(5):
        analyze(client, "free-token", f"y = {i}")

    resp = analyze(client, "free-token", "y = 0")

    assert resp.status_code == 429
    assert generator.calls == 5


def test_generation_failure_is_not_charged(client, quota_store, generator):
    generator.fail = True

    resp = analyze(client, "free-token", "print('hello')")

    assert resp.status_code == 502
    assert resp.json()["code"] == "upstream_error"
    assert ("user-free", "2025-01-15") not in quota_store._counts


def test_unlimited_plan_never_denied(client, quota_store):
    for i in range(8):
        assert analyze(client, "enterprise-token", f"z = {i}").status_code == 201
    assert quota_denied_total.value({"feature": "analyses", "reason": "limit_reached"}) == 0
    assert quota_store._counts[("user-ent", "2025-01-15")] == 8


def test_unknown_plan_is_configuration_error(client, generator):
    resp = analyze(client, "unknown-plan-token", "print(1)")

    assert resp.status_code == 500
    body = resp.json()
    assert body["code"] == "configuration_error"
    assert body["error"] == "Plan configuration not found"
    assert generator.calls == 0


def test_store_outage_fails_closed(services, generator, auth_client, fake_now):
    broken = build_services(
        services.settings,
        quota_store=BrokenQuotaStore(),
        generator=generator,
        repository=InMemoryAnalysisRepository(),
        auth_client=auth_client,
        now=fake_now,
    )
    client = TestClient(create_app(services=broken))

    resp = analyze(client, "free-token", "print(1)")

    assert resp.status_code == 503
    assert resp.json()["code"] == "store_unavailable"
    assert generator.calls == 0


def test_store_outage_does_not_affect_unlimited_plan(services, generator, auth_client, fake_now):
    store = BrokenQuotaStore()
    broken = build_services(
        services.settings,
        quota_store=store,
        generator=generator,
        repository=InMemoryAnalysisRepository(),
        auth_client=auth_client,
        now=fake_now,
    )
    client = TestClient(create_app(services=broken))

    resp = analyze(client, "enterprise-token", "print(1)")

    # recording failed after the work was done; the user still gets the answer
    assert resp.status_code == 201
    assert store.increments == 1


def test_raw_driver_error_while_recording_still_returns_analysis(services, generator, auth_client, fake_now):
    store = ResetOnIncrementStore()
    flaky = build_services(
        services.settings,
        quota_store=store,
        generator=generator,
        repository=InMemoryAnalysisRepository(),
        auth_client=auth_client,
        now=fake_now,
    )
    client = TestClient(create_app(services=flaky))

    resp = analyze(client, "free-token", "print('done')")

    assert resp.status_code == 201
    assert resp.json()["data"]["cached"] is False
    assert generator.calls == 1
    assert store.increments == 1
    assert usage_record_failures_total.value({"feature": "analyses"}) == 1


def test_code_over_absolute_limit_is_rejected(client, quota_store):
    resp = analyze(client, "enterprise-token", "x" * 1_000_001)

    assert resp.status_code == 413
    assert resp.json()["code"] == "payload_too_large"
    assert resp.json()["error"].startswith("Code size too large. Maximum allowed is 1000KB.")
    assert not quota_store._counts


def test_code_over_plan_limit_is_rejected(services, generator, auth_client, fake_now):
    policies = build_policies({"free": {**DEFAULT_PLANS["free"], "maxCodeSize": 2000}})
    small = build_services(
        services.settings,
        policies=policies,
        quota_store=services.quota_store,
        generator=generator,
        repository=InMemoryAnalysisRepository(),
        auth_client=auth_client,
        now=fake_now,
    )
    client = TestClient(create_app(services=small))

    resp = analyze(client, "free-token", "x" * 3500)

    assert resp.status_code == 413
    assert resp.json()["error"] == "Code size exceeds the limit (2KB). Your code is 3KB."
    assert generator.calls == 0


def test_missing_token_is_rejected_before_quota(client, generator):
    resp = client.post("/api/analyze", json={"code": "print(1)", "language": "python"})

    assert resp.status_code == 401
    assert resp.json()["error"] == "No token provided"
    assert generator.calls == 0


def test_invalid_token_is_rejected(client):
    resp = client.post(
        "/api/analyze",
        headers=auth_header("forged"),
        json={"code": "print(1)", "language": "python"},
    )
    assert resp.status_code == 401
    assert resp.json()["error"] == "Invalid or expired token"


def test_analyze_rate_limit_by_ip(client):
    for i in range(10):
        assert analyze(client, "enterprise-token", f"n = {i}").status_code == 201

    blocked = analyze(client, "enterprise-token", "n = 10")

    assert blocked.status_code == 429
    assert blocked.json()["code"] == "rate_limited"
    assert blocked.json()["error"] == "Too many requests. Please try again in 300 seconds."
    assert blocked.headers["Retry-After"] == "300"
    assert blocked.headers["X-RateLimit-Limit"] == "10"
    assert blocked.headers["X-RateLimit-Remaining"] == "0"
    assert blocked.headers["X-RateLimit-Reset"].endswith("Z")
    assert ratelimit_block_total.value({"limiter": "analyze"}) == 1

    # the limiter keys on the socket peer, not on headers the caller controls
    spoofed = client.post(
        "/api/analyze",
        headers={**auth_header("pro-token"), "X-Forwarded-For": "203.0.113.7"},
        json={"code": "n = 11", "language": "python"},
    )
    assert spoofed.status_code == 429


def test_rate_limit_runs_before_authentication(client, fake_clock):
    for _ in range(10):
        client.post("/api/analyze", json={"code": "print(1)", "language": "python"})

    resp = client.post("/api/analyze", json={"code": "print(1)", "language": "python"})
    assert resp.status_code == 429

    fake_clock.advance(300)
    resp = client.post("/api/analyze", json={"code": "print(1)", "language": "python"})
    assert resp.status_code == 401


def test_response_shape(client):
    resp = analyze(client, "pro-token", "for i in range(3):\n    print(i)", fileName="loop.py", isClaudeGenerated=True)

    data = resp.json()["data"]
    assert resp.json()["success"] is True
    assert data["analysisId"]
    explanation = data["explanation"]
    assert explanation["level"] == "beginner"
    assert explanation["aiModel"] == "stub-model"
    assert explanation["keyConcepts"] == ["variables"]
    assert "generationTimeMs" in explanation


def test_history_get_and_delete(client):
    headers = auth_header("standard-token")
    ids = [analyze(client, "standard-token", f"v = {i}").json()["data"]["analysisId"] for i in range(3)]
    analyze(client, "standard-token", "console.log(1)", language="javascript")

    page = client.get("/api/analyze/history", headers=headers, params={"limit": 2}).json()["data"]
    assert page["pagination"] == {"page": 1, "limit": 2, "total": 4, "totalPages": 2}
    assert len(page["analyses"]) == 2

    only_js = client.get("/api/analyze/history", headers=headers, params={"language": "javascript"}).json()["data"]
    assert only_js["pagination"]["total"] == 1
    assert only_js["analyses"][0]["language"] == "javascript"

    fetched = client.get(f"/api/analyze/{ids[0]}", headers=headers)
    assert fetched.status_code == 200
    assert fetched.json()["data"]["analysis"]["code"] == "v = 0"

    # other users cannot see or delete it
    assert client.get(f"/api/analyze/{ids[0]}", headers=auth_header("free-token")).status_code == 404
    assert client.delete(f"/api/analyze/{ids[0]}", headers=auth_header("free-token")).status_code == 404

    deleted = client.delete(f"/api/analyze/{ids[0]}", headers=headers)
    assert deleted.status_code == 200
    assert deleted.json()["message"] == "Analysis deleted successfully"
    assert client.get(f"/api/analyze/{ids[0]}", headers=headers).status_code == 404


def test_history_limit_is_capped(client):
    resp = client.get("/api/analyze/history", headers=auth_header("free-token"), params={"limit": 500})
    assert resp.status_code == 200
    assert resp.json()["data"]["pagination"]["limit"] == 100


def test_history_rejects_bad_dates(client):
    resp = client.get("/api/analyze/history", headers=auth_header("free-token"), params={"startDate": "yesterday"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "startDate must be an ISO-8601 date"
