import json

from fastapi.testclient import TestClient

from starlight.obs.context import clear_context, request_id_var
from starlight.obs.logger import log_event, redact
from starlight.obs.metrics import get_counter, get_metrics_snapshot, inc_counter, record_timing, reset_metrics, timed


def test_metrics_capture_request_and_histogram():
    from main import app

    with TestClient(app) as client:
        r = client.get("/health")
        assert r.status_code == 200
        assert r.headers.get("x-request-id")

        m = client.get("/metrics")
        assert m.status_code == 200
        data = m.json()

    counters = data.get("counters", [])
    assert any(
        c.get("name") == "requests_total" and c.get("labels", {}).get("route") == "/health"
        and c.get("labels", {}).get("status") == "200"
        for c in counters
    )
    hists = data.get("histograms", [])
    assert any(
        h.get("name") == "request_latency_ms" and h.get("labels", {}).get("route") == "/health"
        and isinstance(h.get("counts"), list)
        for h in hists
    )
    assert "hit_rate" in data["cache"]


def test_session_paths_use_route_template():
    from main import app

    with TestClient(app) as client:
        client.get("/journey/abc123")
        data = client.get("/metrics").json()

    routes = {c["labels"].get("route") for c in data["counters"] if c["name"] == "requests_total"}
    assert "/journey/{session_id}" in routes
    assert "/journey/abc123" not in routes


def test_logger_redacts_phone_and_secrets(capsys):
    log_event("order_submit", phone="+37369123456", password="hunter2", security="100042", step="unit-test")
    line = json.loads(capsys.readouterr().out.strip())
    assert line["phone"] == "***3456"
    assert line["password"] == "***"
    assert line["security"] == "***"
    assert line["step"] == "unit-test"
    assert line["level"] == "INFO"


def test_redact_request_body():
    body = {"login": "demo", "password": "secret", "phone": "+373 69 12", "date": "2024-06-01"}
    assert redact(body) == {"login": "demo", "password": "***", "phone": "***6912", "date": "2024-06-01"}
    assert redact({"phone": "12"})["phone"] == "***"


def test_request_id_in_log_lines(capsys):
    request_id_var.set("req-1")
    try:
        log_event("x")
    finally:
        clear_context()
    assert json.loads(capsys.readouterr().out)["request_id"] == "req-1"


def test_counters_and_histograms():
    reset_metrics()
    inc_counter("cache_hits", {"kind": "routes"})
    inc_counter("cache_hits", {"kind": "routes"}, amount=2)
    assert get_counter("cache_hits", {"kind": "routes"}) == 3

    record_timing("provider_latency_ms", 120, {"endpoint": "get_routes"})
    record_timing("provider_latency_ms", 99999, {"endpoint": "get_routes"})
    with timed("provider_latency_ms", {"endpoint": "get_points"}):
        pass

    hists = {h["labels"]["endpoint"]: h for h in get_metrics_snapshot()["histograms"]}
    assert hists["get_routes"]["counts"][2] == 1
    assert hists["get_routes"]["counts"][-1] == 1
    assert sum(hists["get_points"]["counts"]) == 1
    reset_metrics()
    assert get_metrics_snapshot() == {"counters": [], "histograms": []}
