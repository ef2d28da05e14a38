"""Prometheus-compatible metrics endpoint and request tracking middleware."""
from __future__ import annotations

import time
from collections import defaultdict
from threading import Lock

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response


class _Metrics:
    """Thread-safe in-memory metrics collector."""

    def __init__(self):
        self._lock = Lock()
        self.request_count: dict[tuple[str, str, int], int] = defaultdict(int)
        self.request_duration_sum: dict[tuple[str, str], float] = defaultdict(float)
        self.request_duration_count: dict[tuple[str, str], int] = defaultdict(int)
        self.active_requests = 0
        # Pipeline counters
        self.moderation_decisions: dict[str, int] = defaultdict(int)
        self.classifier_attempts: dict[str, int] = defaultdict(int)
        self.classifier_latency_sum = 0.0
        self.classifier_latency_count = 0
        self.startup_time = time.time()

    def record(self, method: str, path: str, status: int, duration: float):
        with self._lock:
            self.request_count[(method, path, status)] += 1
            self.request_duration_sum[(method, path)] += duration
            self.request_duration_count[(method, path)] += 1

    def record_decision(self, action: str):
        with self._lock:
            self.moderation_decisions[action] += 1

    def record_classifier_attempt(self, outcome: str):
        with self._lock:
            self.classifier_attempts[outcome] += 1

    def record_classifier_latency(self, seconds: float):
        with self._lock:
            self.classifier_latency_sum += seconds
            self.classifier_latency_count += 1

    def inc_active(self):
        with self._lock:
            self.active_requests += 1

    def dec_active(self):
        with self._lock:
            self.active_requests -= 1

    def reset(self):
        with self._lock:
            self.request_count.clear()
            self.request_duration_sum.clear()
            self.request_duration_count.clear()
            self.moderation_decisions.clear()
            self.classifier_attempts.clear()
            self.classifier_latency_sum = 0.0
            self.classifier_latency_count = 0
            self.active_requests = 0

    def render(self) -> str:
        lines: list[str] = []
        lines.append("# HELP vibeguard_http_requests_total Total HTTP requests")
        lines.append("# TYPE vibeguard_http_requests_total counter")
        with self._lock:
            for (method, path, status), count in sorted(self.request_count.items()):
                lines.append(
                    f'vibeguard_http_requests_total{{method="{method}",path="{path}",status="{status}"}} {count}'
                )

            lines.append("")
            lines.append("# HELP vibeguard_http_request_duration_seconds HTTP request duration")
            lines.append("# TYPE vibeguard_http_request_duration_seconds summary")
            for (method, path), total in sorted(self.request_duration_sum.items()):
                count = self.request_duration_count[(method, path)]
                lines.append(
                    f'vibeguard_http_request_duration_seconds_sum{{method="{method}",path="{path}"}} {total:.6f}'
                )
                lines.append(
                    f'vibeguard_http_request_duration_seconds_count{{method="{method}",path="{path}"}} {count}'
                )

            lines.append("")
            lines.append("# HELP vibeguard_moderation_decisions_total Moderation outcomes by action")
            lines.append("# TYPE vibeguard_moderation_decisions_total counter")
            for action, count in sorted(self.moderation_decisions.items()):
                lines.append(f'vibeguard_moderation_decisions_total{{action="{action}"}} {count}')

            lines.append("")
            lines.append("# HELP vibeguard_classifier_attempts_total Classifier HTTP attempts by outcome")
            lines.append("# TYPE vibeguard_classifier_attempts_total counter")
            for outcome, count in sorted(self.classifier_attempts.items()):
                lines.append(f'vibeguard_classifier_attempts_total{{outcome="{outcome}"}} {count}')

            lines.append("")
            lines.append("# HELP vibeguard_classifier_latency_seconds Successful analysis latency")
            lines.append("# TYPE vibeguard_classifier_latency_seconds summary")
            lines.append(f"vibeguard_classifier_latency_seconds_sum {self.classifier_latency_sum:.6f}")
            lines.append(f"vibeguard_classifier_latency_seconds_count {self.classifier_latency_count}")

            lines.append("")
            lines.append("# HELP vibeguard_active_requests Current in-flight requests")
            lines.append("# TYPE vibeguard_active_requests gauge")
            lines.append(f"vibeguard_active_requests {self.active_requests}")

            lines.append("")
            lines.append("# HELP vibeguard_uptime_seconds Seconds since process start")
            lines.append("# TYPE vibeguard_uptime_seconds gauge")
            lines.append(f"vibeguard_uptime_seconds {time.time() - self.startup_time:.1f}")

        return "\n".join(lines) + "\n"


metrics = _Metrics()


def _normalize_path(path: str) -> str:
    """Collapse IDs in paths to reduce cardinality. /queue/<uuid> -> /queue/:id"""
    parts = path.rstrip("/").split("/")
    normalized = []
    for part in parts:
        if part.isdigit() or (len(part) > 20 and part.replace("-", "").isalnum()):
            normalized.append(":id")
        else:
            normalized.append(part)
    return "/".join(normalized) or "/"


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return PlainTextResponse(metrics.render(), media_type="text/plain; version=0.0.4")

        metrics.inc_active()
        start = time.perf_counter()
        try:
            response = await call_next(request)
            duration = time.perf_counter() - start
            metrics.record(
                request.method,
                _normalize_path(request.url.path),
                response.status_code,
                duration,
            )
            return response
        except Exception:
            duration = time.perf_counter() - start
            metrics.record(request.method, _normalize_path(request.url.path), 500, duration)
            raise
        finally:
            metrics.dec_active()
