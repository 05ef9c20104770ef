from __future__ import annotations

import json
import sys
from pathlib import Path

import httpx
import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from formconfig.risk_client import RiskServiceClient, RiskServiceError, _parse_timeout_seconds  # noqa: E402


def test_assess_posts_context_and_returns_verdict():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers.get("Authorization")
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"score": 42, "level": "medium"})

    client = RiskServiceClient(
        base_url="https://risk.example.com/api/",
        api_key="secret",
        transport=httpx.MockTransport(handler),
    )

    result = client.assess(product_id="retail-loan", context={"locationType": "freezone"})

    assert result == {"score": 42, "level": "medium"}
    assert captured["url"] == "https://risk.example.com/api/assess"
    assert captured["auth"] == "Bearer secret"
    assert captured["body"] == {"productId": "retail-loan", "context": {"locationType": "freezone"}}


def test_error_status_is_raised():
    client = RiskServiceClient(
        base_url="https://risk.example.com",
        transport=httpx.MockTransport(lambda request: httpx.Response(503, text="down")),
    )

    with pytest.raises(RiskServiceError, match="HTTP 503"):
        client.assess(product_id="retail-loan", context={})


def test_non_object_payload_is_rejected():
    client = RiskServiceClient(
        base_url="https://risk.example.com",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[1, 2])),
    )

    with pytest.raises(RiskServiceError, match="JSON object"):
        client.assess(product_id="retail-loan", context={})


def test_transport_failure_is_wrapped():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = RiskServiceClient(base_url="https://risk.example.com", transport=httpx.MockTransport(handler))

    with pytest.raises(RiskServiceError, match="HTTP request failed"):
        client.assess(product_id="retail-loan", context={})


def test_unconfigured_client_refuses_to_call():
    client = RiskServiceClient(base_url="  ")

    assert client.configured is False
    with pytest.raises(RiskServiceError, match="not configured"):
        client.assess(product_id="retail-loan", context={})


def test_from_env(monkeypatch):
    monkeypatch.setenv("RISK_SERVICE_URL", "https://risk.example.com")
    monkeypatch.setenv("RISK_SERVICE_TIMEOUT_SECONDS", "-3")

    client = RiskServiceClient.from_env()

    assert client.configured is True
    assert client.timeout_seconds == 30.0
    assert _parse_timeout_seconds("12.5", fallback=30.0) == 12.5
    assert _parse_timeout_seconds("soon", fallback=30.0) == 30.0
