"""
Speech synthesis cascade.

Given text and a voice, return audio bytes. A content-addressed cache sits
in front; on a miss the backends are tried in priority order (remote HTTP
service, local engine, synthetic placeholder) until one succeeds.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from audio_cache import AudioCache, compute_cache_key
from config import BackendMode, SynthesisBackendConfig, TTSConfig
from errors import AllBackendsExhausted, CacheIOError, InvalidInput, UpstreamUnavailable
from metrics import MetricsSink, NullMetrics
from tts_backends import build_backends

logger = logging.getLogger(__name__)

SOURCE_CACHE = "cache"

_VOICE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

VOICES = [
    {"id": "sk-SK-female", "name": "Slovak Female", "language": "sk-SK", "gender": "female"},
    {"id": "sk-SK-male", "name": "Slovak Male", "language": "sk-SK", "gender": "male"},
    {"id": "en-US-female", "name": "English US Female", "language": "en-US", "gender": "female"},
    {"id": "en-US-male", "name": "English US Male", "language": "en-US", "gender": "male"},
]


@dataclass
class SynthesisResult:
    audio_bytes: bytes
    source_backend: str  # "remote", "local", "synthetic" or "cache"
    cache_key: str
    cached: bool = False
    cache_written: bool = False
    attempts: List[Tuple[str, str]] = field(default_factory=list)  # (backend, failure reason)
    duration_ms: float = 0.0


class SpeechSynthesisCascade:
    """Cache-fronted, ordered fallback across synthesis backends."""

    def __init__(
        self,
        backends: Sequence[Any],
        cache: Optional[AudioCache] = None,
        default_voice: str = "sk-SK-female",
        max_text_length: int = 1000,
        mode: BackendMode = BackendMode.NONE,
        metrics: Optional[MetricsSink] = None,
    ):
        self.backends = list(backends)
        self.cache = cache
        self.default_voice = default_voice
        self.max_text_length = max_text_length
        self.mode = mode
        self.metrics = metrics if metrics is not None else NullMetrics()

    @classmethod
    def from_config(cls, tts: TTSConfig, metrics: Optional[MetricsSink] = None) -> "SpeechSynthesisCascade":
        backend_config = SynthesisBackendConfig.resolve(tts)
        cache = AudioCache(tts.cache_dir, tts.cache_max_bytes) if tts.cache_enabled else None
        cascade = cls(
            build_backends(backend_config, tts),
            cache=cache,
            default_voice=tts.default_voice,
            max_text_length=tts.max_text_length,
            mode=backend_config.mode,
            metrics=metrics,
        )
        logger.info(
            f"TTS cascade: {' -> '.join(b.name for b in cascade.backends) or 'no backends'}, "
            f"cache {'enabled at ' + tts.cache_dir if cache else 'disabled'}"
        )
        return cascade

    def _validate(self, text: Any, voice: Any) -> Tuple[str, str]:
        if not isinstance(text, str) or not text.strip():
            raise InvalidInput("text is required and must be a non-empty string")
        if len(text) > self.max_text_length:
            raise InvalidInput(f"text must be at most {self.max_text_length} characters")
        if voice is None:
            voice = self.default_voice
        if not isinstance(voice, str) or not _VOICE_RE.match(voice):
            raise InvalidInput(f"invalid voice id: {voice!r}")
        return text, voice

    async def synthesize(self, text: str, voice: Optional[str] = None) -> SynthesisResult:
        """Turn text into audio, raising InvalidInput or AllBackendsExhausted."""
        text, voice = self._validate(text, voice)
        start = time.time()
        key = compute_cache_key(text, voice)

        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                result = SynthesisResult(cached, SOURCE_CACHE, key, cached=True)
                self._finish(result, start, text)
                return result

        attempts: List[Tuple[str, str]] = []
        for backend in self.backends:
            try:
                audio = await backend.synthesize(text, voice)
            except UpstreamUnavailable as e:
                logger.warning(f"TTS backend {backend.name} failed, falling through: {e.reason}")
                attempts.append((backend.name, e.reason))
                continue

            result = SynthesisResult(audio, backend.name, key, attempts=attempts)
            result.cache_written = self._store(key, audio)
            self._finish(result, start, text)
            return result

        self.metrics.track("tts", "error", duration_ms=(time.time() - start) * 1000)
        raise AllBackendsExhausted(attempts)

    def _store(self, key: str, audio: bytes) -> bool:
        if self.cache is None:
            return False
        try:
            self.cache.put(key, audio)
        except CacheIOError as e:
            logger.warning(f"Could not cache TTS audio: {e}")
            return False
        return True

    def _finish(self, result: SynthesisResult, start: float, text: str):
        result.duration_ms = (time.time() - start) * 1000
        self.metrics.track(
            "tts", "synthesize",
            duration_ms=result.duration_ms,
            characters=len(text),
            audio_bytes=len(result.audio_bytes),
            cache_hits=1 if result.cached else 0,
            fallbacks=len(result.attempts),
        )
        logger.info(
            f"TTS {len(text)} chars -> {len(result.audio_bytes)} bytes from {result.source_backend} "
            f"in {result.duration_ms:.0f}ms"
        )

    def status(self) -> Dict[str, Any]:
        names = [b.name for b in self.backends]
        return {
            "mode": self.mode.value,
            "backends": names,
            "remote_configured": "remote" in names,
            "local_configured": "local" in names,
            "synthetic_fallback": "synthetic" in names,
            "cache_enabled": self.cache is not None,
            "default_voice": self.default_voice,
        }

    def voices(self) -> Dict[str, Any]:
        return {
            "voices": [dict(v, recommended=v["id"] == self.default_voice) for v in VOICES],
            "default": self.default_voice,
        }
