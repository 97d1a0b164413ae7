from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import requests

from rollout_core.errors import MetricsUnavailable, TrafficShiftFailed
from rollout_core.types import MetricSample


def _parse_json_response(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {"raw": response.text[:500]}


def _auth_headers(token: str | None) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


def _pick(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    raise KeyError(keys[0])


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


class HttpTrafficRouter:
    """Traffic router backed by a REST endpoint.

    ``PUT {base_url}/services/{service_id}/traffic`` with ``{"percent": p}``;
    any 2xx answer counts as an acknowledgement.
    """

    def __init__(self, base_url: str, *, timeout_sec: float = 30.0, token: str | None = None, session: requests.Session | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_sec = timeout_sec
        self.token = token
        self.session = session or requests.Session()

    def set_traffic_percentage(self, service_id: str, percent: int) -> None:
        if not 0 <= int(percent) <= 100:
            raise TrafficShiftFailed(f"percent must be within [0, 100], got {percent}")
        url = f"{self.base_url}/services/{service_id}/traffic"
        try:
            response = self.session.put(
                url,
                json={"percent": int(percent)},
                headers=_auth_headers(self.token),
                timeout=self.timeout_sec,
            )
        except requests.RequestException as exc:
            raise TrafficShiftFailed(f"Router unreachable at {url}: {exc}") from exc
        if not response.ok:
            payload = _parse_json_response(response)
            raise TrafficShiftFailed(f"Router rejected {percent}% for {service_id} (HTTP {response.status_code}): {payload}")


class HttpMetricsSource:
    """Metrics source reading one JSON document per sample.

    Accepts camelCase (``errorRate``, ``responseTimeMs``/``responseTime``) or
    snake_case keys.
    """

    def __init__(self, url: str, *, timeout_sec: float = 10.0, token: str | None = None, session: requests.Session | None = None) -> None:
        self.url = url
        self.timeout_sec = timeout_sec
        self.token = token
        self.session = session or requests.Session()

    def sample(self, service_id: str) -> MetricSample:
        try:
            response = self.session.get(
                self.url,
                params={"service": service_id},
                headers=_auth_headers(self.token),
                timeout=self.timeout_sec,
            )
        except requests.RequestException as exc:
            raise MetricsUnavailable(f"Metrics source unreachable at {self.url}: {exc}") from exc
        if not response.ok:
            raise MetricsUnavailable(f"Metrics source answered HTTP {response.status_code} for {service_id}")
        payload = _parse_json_response(response)
        if not isinstance(payload, dict):
            raise MetricsUnavailable(f"Metrics payload for {service_id} is not an object")
        try:
            return MetricSample(
                error_rate=float(_pick(payload, "errorRate", "error_rate")),
                response_time_ms=float(_pick(payload, "responseTimeMs", "response_time_ms", "responseTime")),
                throughput=float(_pick(payload, "throughput")),
                timestamp=_parse_timestamp(payload.get("timestamp")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MetricsUnavailable(f"Malformed metrics payload for {service_id}: {payload}") from exc
