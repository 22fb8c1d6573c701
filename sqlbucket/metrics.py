import json
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Protocol


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageMetrics:
    read_bytes: int = 0
    write_bytes: int = 0
    egress_bytes: int = 0
    image_read_bytes: int = 0
    image_write_bytes: int = 0

    def __add__(self, other: 'UsageMetrics') -> 'UsageMetrics':
        return UsageMetrics(
            read_bytes=self.read_bytes + other.read_bytes,
            write_bytes=self.write_bytes + other.write_bytes,
            egress_bytes=self.egress_bytes + other.egress_bytes,
            image_read_bytes=self.image_read_bytes + other.image_read_bytes,
            image_write_bytes=self.image_write_bytes + other.image_write_bytes
        )


def string_size(text: str) -> int:
    return len(text.encode('utf-8'))


def object_size(obj: Any) -> int:
    return string_size(json.dumps(obj))


def measure_query(
    script: str,
    response_payload: Dict[str, Any],
    input_image_size: int = 0,
    stored_image_size: int = 0
) -> UsageMetrics:
    result_size = object_size(response_payload)
    return UsageMetrics(
        read_bytes=result_size,
        write_bytes=string_size(script),
        egress_bytes=result_size,
        image_read_bytes=input_image_size,
        image_write_bytes=stored_image_size
    )


class MetricsSink(Protocol):
    async def record(self, user_id: str, metrics: UsageMetrics) -> None: ...


class LoggingMetricsSink:
    async def record(self, user_id: str, metrics: UsageMetrics) -> None:
        log.info(
            'usage user=%s read=%d write=%d egress=%d',
            user_id, metrics.read_bytes, metrics.write_bytes, metrics.egress_bytes
        )


class InMemoryMetricsSink:
    def __init__(self):
        self._totals: Dict[str, UsageMetrics] = defaultdict(UsageMetrics)
        self._lock = threading.RLock()

    async def record(self, user_id: str, metrics: UsageMetrics) -> None:
        with self._lock:
            self._totals[user_id] = self._totals[user_id] + metrics

    def totals(self, user_id: str) -> UsageMetrics:
        with self._lock:
            return self._totals.get(user_id, UsageMetrics())


async def track(sink: MetricsSink, user_id: str, metrics: UsageMetrics) -> None:
    try:
        await sink.record(user_id, metrics)
    except Exception:
        log.exception('Failed to track metrics for user %s', user_id)
