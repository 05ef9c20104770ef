from __future__ import annotations

import logging
import os
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class RiskServiceError(RuntimeError):
    pass


class RiskServiceClient:
    """Posts a rule context to the external risk/decision service and returns its verdict as-is."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.strip().rstrip("/")
        self.api_key = api_key.strip()
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @classmethod
    def from_env(cls) -> "RiskServiceClient":
        return cls(
            base_url=os.getenv("RISK_SERVICE_URL", ""),
            api_key=os.getenv("RISK_SERVICE_API_KEY", ""),
            timeout_seconds=_parse_timeout_seconds(
                os.getenv("RISK_SERVICE_TIMEOUT_SECONDS"),
                fallback=30.0,
            ),
        )

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def assess(self, *, product_id: str, context: dict[str, Any]) -> dict[str, Any]:
        if not self.configured:
            raise RiskServiceError("Risk service is not configured. Set RISK_SERVICE_URL.")
        headers = {"Accept": "application/json", "User-Agent": "FormConfig/1.0"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = client.post(
                    f"{self.base_url}/assess",
                    headers=headers,
                    json={"productId": product_id, "context": context},
                )
        except httpx.HTTPError as exc:
            logger.warning("Risk service request failed for product %s: %s", product_id, exc)
            raise RiskServiceError(f"HTTP request failed: {exc}") from exc

        if response.status_code >= 400:
            logger.warning(
                "Risk service returned %s for product %s", response.status_code, product_id
            )
            raise RiskServiceError(
                f"Risk service returned HTTP {response.status_code}: {response.text[:300]}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise RiskServiceError("Risk service returned invalid JSON.") from exc
        if not isinstance(payload, dict):
            raise RiskServiceError("Risk service response must be a JSON object.")
        return payload


def _parse_timeout_seconds(raw_value: str | None, *, fallback: float) -> float:
    if raw_value is None:
        return fallback
    try:
        value = float(raw_value)
    except ValueError:
        return fallback
    if value <= 0:
        return fallback
    return value
