from fastapi.testclient import TestClient

from src.athrean.api.main import app
from src.athrean.observability.metrics import sanitize_path


def test_metrics_endpoint_exposes_histogram():
    with TestClient(app) as client:
        # Trigger a request to ensure histogram has an observation
        r = client.get("/health")
        assert r.status_code == 200

        m = client.get("/metrics")
        assert m.status_code == 200
        body = m.text

    assert "# HELP athrean_request_latency_seconds" in body
    assert "# TYPE athrean_request_latency_seconds histogram" in body
    assert "athrean_request_latency_seconds_count" in body
    assert "athrean_generations_total" in body or "# HELP athrean_generations" in body
    assert "athrean_stream_records_dropped" in body


def test_api_metrics_alias():
    with TestClient(app) as client:
        assert client.get("/api/metrics").status_code == 200


def test_sanitize_path_coarsens_ids():
    assert sanitize_path("") == "/"
    assert sanitize_path("/") == "/"
    assert sanitize_path("/sessions/abc123/generate") == "/sessions"
    assert sanitize_path("/api/sessions/abc123?x=1") == "/api/sessions"
    assert sanitize_path("/api") == "/api"
