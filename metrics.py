"""
Activity metrics for the voice relay.

Components receive a metrics sink and call `track(service, action, **data)`;
when nobody cares about metrics they get NullMetrics and the calls cost
nothing.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)


class MetricsSink(Protocol):
    def track(self, service: str, action: str, **data: Any) -> None: ...


class NullMetrics:
    """Sink that drops everything."""

    def track(self, service: str, action: str, **data: Any) -> None:
        pass


def format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24
    if days > 0:
        return f"{days}d {hours % 24}h {minutes % 60}m"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


@dataclass
class ServiceCounters:
    requests: int = 0
    errors: int = 0
    total_duration_ms: float = 0.0
    extra: Dict[str, float] = field(default_factory=dict)


class RelayMetrics:
    """In-memory counters for tts, chat, transcription and websocket activity."""

    def __init__(self, clock=time.time):
        self._clock = clock
        self.start_time = clock()
        self.services: Dict[str, ServiceCounters] = {}
        self.websocket = {
            "connections": 0,
            "active_connections": 0,
            "messages_received": 0,
            "messages_sent": 0,
        }

    def _service(self, name: str) -> ServiceCounters:
        counters = self.services.get(name)
        if counters is None:
            counters = self.services[name] = ServiceCounters()
        return counters

    def track(self, service: str, action: str, **data: Any) -> None:
        if service == "websocket":
            self._track_websocket(action)
            return

        counters = self._service(service)
        if action == "error":
            counters.errors += 1
        else:
            counters.requests += 1
        duration = data.get("duration_ms")
        if duration is not None:
            counters.total_duration_ms += duration
        for key, value in data.items():
            if key == "duration_ms" or isinstance(value, bool) or not isinstance(value, (int, float)):
                continue
            counters.extra[key] = counters.extra.get(key, 0) + value
        logger.debug(f"metric {service}.{action}: {data}")

    def _track_websocket(self, action: str):
        ws = self.websocket
        if action == "connect":
            ws["connections"] += 1
            ws["active_connections"] += 1
        elif action == "disconnect":
            ws["active_connections"] = max(0, ws["active_connections"] - 1)
        elif action == "message_received":
            ws["messages_received"] += 1
        elif action == "message_sent":
            ws["messages_sent"] += 1
        else:
            logger.warning(f"Unknown websocket metric: {action}")

    @contextmanager
    def measure(self, service: str, action: str, **data: Any):
        """Track a block's duration; failures are counted as errors."""
        start = time.time()
        try:
            yield
        except Exception:
            self.track(service, "error", duration_ms=(time.time() - start) * 1000)
            raise
        self.track(service, action, duration_ms=(time.time() - start) * 1000, **data)

    def snapshot(self, session_stats: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        uptime = self._clock() - self.start_time
        total = sum(c.requests for c in self.services.values())
        failed = sum(c.errors for c in self.services.values())
        return {
            "uptime": uptime,
            "uptime_formatted": format_uptime(uptime),
            "start_time": self.start_time,
            "requests": {"total": total, "failed": failed},
            "services": {
                name: {
                    "requests": c.requests,
                    "errors": c.errors,
                    "total_duration_ms": round(c.total_duration_ms, 1),
                    **c.extra,
                }
                for name, c in self.services.items()
            },
            "websocket": dict(self.websocket),
            "sessions": session_stats or {},
        }
