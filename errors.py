"""
Error taxonomy for the voice relay.
"""

from typing import List, Optional, Tuple


class RelayError(Exception):
    """Base class for errors surfaced by the relay core."""
    code = "relay_error"


class InvalidInput(RelayError):
    """Malformed caller input. Never retried."""
    code = "invalid_input"


class NotFound(RelayError):
    """Unknown session or resource on an operation that requires existence."""
    code = "not_found"


class UpstreamUnavailable(RelayError):
    """A synthesis backend failed; the cascade falls through to the next one."""
    code = "upstream_unavailable"

    def __init__(self, backend: str, reason: str):
        super().__init__(f"{backend}: {reason}")
        self.backend = backend
        self.reason = reason


class BackendTimeout(UpstreamUnavailable):
    """A backend did not answer within its time budget."""
    code = "timeout"


class CacheIOError(RelayError):
    """Reading or writing the audio cache failed. Never fails a request."""
    code = "cache_io_error"


class CacheWriteFailed(CacheIOError):
    code = "cache_write_failed"


class AllBackendsExhausted(RelayError):
    """Every configured backend failed and the synthetic fallback is disabled."""
    code = "all_backends_exhausted"

    def __init__(self, attempts: List[Tuple[str, str]], stage: Optional[str] = "synthesize"):
        tried = ", ".join(f"{name} ({reason})" for name, reason in attempts) or "none configured"
        super().__init__(f"all synthesis backends failed during {stage}: {tried}")
        self.attempts = attempts
        self.stage = stage
