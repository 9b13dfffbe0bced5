"""Request latency logging middleware with rolling per-endpoint stats."""

import logging
import re
import time
from collections import defaultdict, deque
from typing import Callable

from fastapi import Request, Response

logger = logging.getLogger(__name__)

# Thresholds for log levels (in milliseconds)
SLOW_REQUEST_THRESHOLD_MS = 1000
VERY_SLOW_REQUEST_THRESHOLD_MS = 3000

HEALTH_PATHS = ("/health", "/health/ready", "/health/stats")

_UUID_PATTERN = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)
# Download tokens are url-safe base64, 32 characters
_TOKEN_PATTERN = re.compile(r"(/downloads/)[A-Za-z0-9_-]+")


class LatencyStats:
    """In-memory rolling window of request latencies.

    Keyed by method and normalized path so ``/orders/<uuid>`` requests are
    aggregated together.
    """

    def __init__(self, max_samples: int = 1000) -> None:
        self._samples: deque[tuple[str, float]] = deque(maxlen=max_samples)

    def record(self, endpoint: str, latency_ms: float) -> None:
        self._samples.append((endpoint, latency_ms))

    def get_stats(self) -> dict:
        """Aggregated stats across all recorded endpoints."""
        latencies = sorted(latency for _, latency in self._samples)
        total = len(latencies)
        if not total:
            return {
                "total_requests": 0,
                "avg_latency_ms": 0,
                "p50_latency_ms": 0,
                "p95_latency_ms": 0,
                "p99_latency_ms": 0,
            }
        return {
            "total_requests": total,
            "avg_latency_ms": round(sum(latencies) / total, 2),
            "p50_latency_ms": round(latencies[int(total * 0.5)], 2),
            "p95_latency_ms": round(latencies[min(int(total * 0.95), total - 1)], 2),
            "p99_latency_ms": round(latencies[min(int(total * 0.99), total - 1)], 2),
        }

    def get_stats_by_endpoint(self) -> dict[str, dict]:
        by_endpoint: dict[str, list[float]] = defaultdict(list)
        for endpoint, latency in self._samples:
            by_endpoint[endpoint].append(latency)

        result = {}
        for endpoint, latencies in by_endpoint.items():
            latencies.sort()
            total = len(latencies)
            result[endpoint] = {
                "count": total,
                "avg_ms": round(sum(latencies) / total, 2),
                "p95_ms": round(latencies[min(int(total * 0.95), total - 1)], 2),
                "max_ms": round(latencies[-1], 2),
            }
        return result

    def reset(self) -> None:
        self._samples.clear()

    @staticmethod
    def normalize_path(path: str) -> str:
        """Replace ids and download tokens with placeholders."""
        path = _UUID_PATTERN.sub("{id}", path)
        return _TOKEN_PATTERN.sub(r"\1{token}", path)


_latency_stats: LatencyStats | None = None


def get_latency_stats() -> LatencyStats:
    """Get or create the global latency stats instance."""
    global _latency_stats
    if _latency_stats is None:
        _latency_stats = LatencyStats()
    return _latency_stats


async def latency_logging_middleware(request: Request, call_next: Callable) -> Response:
    """Log method, path, status and duration of every request and record stats.

    Health probes are logged at debug level only when slow and are left out
    of the stats.
    """
    start_time = time.perf_counter()

    method = request.method
    path = request.url.path
    is_health_check = path in HEALTH_PATHS

    response = None
    error_occurred = False

    try:
        response = await call_next(request)
        return response
    except Exception:
        error_occurred = True
        raise
    finally:
        latency_ms = (time.perf_counter() - start_time) * 1000
        status_code = response.status_code if response else 500

        # Never log download tokens, they are bearer credentials
        log_path = LatencyStats.normalize_path(path)
        if not is_health_check:
            get_latency_stats().record(f"{method} {log_path}", latency_ms)

        if is_health_check:
            if latency_ms > 100:
                logger.debug("%s %s - %s - %.2fms", method, log_path, status_code, latency_ms)
        elif error_occurred or status_code >= 500:
            logger.error("%s %s - %s - %.2fms", method, log_path, status_code, latency_ms)
        elif latency_ms > VERY_SLOW_REQUEST_THRESHOLD_MS:
            logger.error("VERY SLOW REQUEST: %s %s - %s - %.2fms", method, log_path, status_code, latency_ms)
        elif latency_ms > SLOW_REQUEST_THRESHOLD_MS:
            logger.warning("SLOW REQUEST: %s %s - %s - %.2fms", method, log_path, status_code, latency_ms)
        elif status_code >= 400:
            logger.warning("%s %s - %s - %.2fms", method, log_path, status_code, latency_ms)
        else:
            logger.info("%s %s - %s - %.2fms", method, log_path, status_code, latency_ms)
