"""
Grafana OTLP Metrics Exporter
==============================

Pushes backend usage metrics (tokens, latency) to Grafana Cloud via OTLP.

Metrics exported:
- llm_tokens_total: Total tokens used (input + output)
- llm_latency_ms: Backend call latency in milliseconds
- llm_prompt_tokens / llm_completion_tokens: Split token counts
"""

import base64
import time
from typing import Optional, Dict, List

import httpx

from helpdesk_retrieval.config import settings
from helpdesk_retrieval.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def _gauge(name: str, unit: str, description: str, value: int, timestamp_ns: int, attributes: List[dict]) -> dict:
    return {
        "name": name,
        "unit": unit,
        "description": description,
        "gauge": {
            "dataPoints": [
                {
                    "asInt": value,
                    "timeUnixNano": timestamp_ns,
                    "attributes": attributes
                }
            ]
        }
    }


class GrafanaOTLPExporter:
    """
    Export backend metrics to Grafana Cloud via OTLP HTTP endpoint.

    Uses OpenTelemetry Protocol (OTLP) JSON format for metrics.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        api_key: Optional[str] = None,
        instance_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self._host = host or settings.grafana_host
        self._api_key = api_key or settings.grafana_api_key
        self._instance_id = instance_id or settings.grafana_instance_id
        self._transport = transport
        self._enabled = bool(self._host and self._api_key and self._instance_id)

        if self._enabled:
            auth_pair = f"{self._instance_id}:{self._api_key}"
            self._auth_encoded = base64.b64encode(auth_pair.encode()).decode()
            # Don't double-append the path if host already includes it
            if "/otlp/v1/metrics" not in self._host:
                self._url = f"{self._host.rstrip('/')}/otlp/v1/metrics"
            else:
                self._url = self._host
            logger.info(
                "Grafana OTLP exporter initialized",
                extra={"host": self._host, "instance_id": self._instance_id}
            )
        else:
            logger.debug(
                "Grafana OTLP exporter not configured - metrics will not be exported",
                extra={
                    "host_configured": bool(self._host),
                    "api_key_configured": bool(self._api_key),
                    "instance_id_configured": bool(self._instance_id)
                }
            )

    def is_enabled(self) -> bool:
        """Check if exporter is properly configured."""
        return self._enabled

    def build_payload(
        self,
        backend: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        latency_ms: int,
        operation: str,
        attributes: Optional[Dict[str, str]] = None
    ) -> dict:
        """Build the OTLP resourceMetrics document for one backend call."""
        timestamp_ns = int(time.time() * 1_000_000_000)

        metric_attributes = [
            {"key": "backend", "value": {"stringValue": backend}},
            {"key": "model", "value": {"stringValue": model}},
            {"key": "operation", "value": {"stringValue": operation}},
            {"key": "service", "value": {"stringValue": settings.app_name}},
        ]
        for key, value in (attributes or {}).items():
            metric_attributes.append({"key": key, "value": {"stringValue": str(value)}})

        metrics = [
            _gauge("llm_tokens_total", "1", "Total tokens used in backend requests",
                   prompt_tokens + completion_tokens, timestamp_ns, metric_attributes),
            _gauge("llm_latency_ms", "ms", "Backend request latency in milliseconds",
                   latency_ms, timestamp_ns, metric_attributes),
            _gauge("llm_prompt_tokens", "1", "Number of input tokens",
                   prompt_tokens, timestamp_ns, metric_attributes),
            _gauge("llm_completion_tokens", "1", "Number of output tokens",
                   completion_tokens, timestamp_ns, metric_attributes),
        ]

        return {
            "resourceMetrics": [
                {
                    "resource": {
                        "attributes": [
                            {"key": "service.name", "value": {"stringValue": settings.app_name}},
                            {"key": "service.version", "value": {"stringValue": settings.app_version}},
                            {"key": "deployment.environment", "value": {"stringValue": settings.environment}},
                        ]
                    },
                    "scopeMetrics": [{"metrics": metrics}]
                }
            ]
        }

    async def export_llm_metrics(
        self,
        backend: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        latency_ms: int,
        operation: str = "generate",
        attributes: Optional[Dict[str, str]] = None
    ) -> bool:
        """
        Export one backend call's usage to Grafana.

        Metrics are best effort: failures are logged and reported as False,
        never raised into the calling gateway.

        Returns:
            True if export succeeded, False otherwise
        """
        if not self._enabled:
            return False

        payload = self.build_payload(
            backend, model, prompt_tokens, completion_tokens, latency_ms, operation, attributes
        )
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Basic {self._auth_encoded}",
            "X-Grafana-Org-Id": str(self._instance_id)
        }

        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                response = await client.post(self._url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            logger.error(
                "Error exporting metrics to Grafana",
                extra={"error": str(e), "backend": backend}
            )
            return False

        if response.status_code in (200, 202):
            logger.debug(
                "Backend metrics exported to Grafana",
                extra={
                    "backend": backend,
                    "operation": operation,
                    "total_tokens": prompt_tokens + completion_tokens,
                    "latency_ms": latency_ms
                }
            )
            return True

        logger.warning(
            "Failed to export metrics to Grafana",
            extra={
                "status_code": response.status_code,
                "response": response.text[:500],
                "url": self._url
            }
        )
        return False


def init_grafana_exporter(
    host: str,
    api_key: str,
    instance_id: str
) -> GrafanaOTLPExporter:
    """Build the exporter from explicit credentials (lifespan startup)."""
    exporter = GrafanaOTLPExporter(host=host, api_key=api_key, instance_id=instance_id)
    if not exporter.is_enabled():
        logger.warning("Grafana exporter created without complete credentials")
    return exporter
