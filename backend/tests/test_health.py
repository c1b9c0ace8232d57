from fastapi.testclient import TestClient


def _get_client() -> TestClient:
    from habitpilot.main import app

    return TestClient(app)


def test_health_endpoint_returns_ok() -> None:
    client = _get_client()
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_request_id_generated_and_returned() -> None:
    client = _get_client()
    first = client.get("/health").headers.get("X-Request-Id")
    second = client.get("/health").headers.get("X-Request-Id")

    assert first
    assert second
    assert first != second


def test_request_id_echoed_from_header() -> None:
    client = _get_client()
    req_id = "bilan-request-42"
    response = client.get("/health", headers={"X-Request-Id": req_id})

    assert response.headers.get("X-Request-Id") == req_id


def test_oversized_request_id_is_replaced() -> None:
    client = _get_client()
    response = client.get("/health", headers={"X-Request-Id": "x" * 200})

    returned = response.headers.get("X-Request-Id")
    assert returned
    assert returned != "x" * 200
    assert len(returned) == 32


def test_access_line_is_logged(caplog) -> None:
    client = _get_client()
    with caplog.at_level("INFO", logger="habitpilot.core.middleware"):
        client.get("/health")

    assert any("GET /health -> 200" in record.getMessage() for record in caplog.records)
