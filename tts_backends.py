"""
Speech synthesis backends.

Each backend turns (text, voice) into WAV bytes or raises
UpstreamUnavailable. The cascade in synthesis.py tries them in order.

- RemoteTTSBackend: Wyoming/Piper HTTP service (`POST {base}/api/tts`)
- LocalTTSBackend: Piper binary run as a subprocess
- SyntheticTTSBackend: placeholder audio, never fails
"""

import asyncio
import contextlib
import logging
import os
import tempfile
import time
from typing import Iterator, List

import aiohttp

from audio_utils import generate_tone_wav, placeholder_duration
from config import SynthesisBackendConfig, TTSConfig
from errors import BackendTimeout, UpstreamUnavailable

logger = logging.getLogger(__name__)


class RemoteTTSBackend:
    """HTTP text-to-speech service."""

    name = "remote"

    def __init__(self, base_url: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _post(self, session: aiohttp.ClientSession, url: str, headers=None, **kwargs) -> bytes:
        request_headers = {"Accept": "audio/*"}
        request_headers.update(headers or {})
        async with session.post(url, headers=request_headers, **kwargs) as response:
            if not 200 <= response.status < 300:
                error_text = await response.text(errors="replace")
                raise UpstreamUnavailable(self.name, f"HTTP {response.status} from {url}: {error_text[:200]}")
            content_type = (response.headers.get("Content-Type") or "").lower()
            if not content_type.startswith("audio/"):
                raise UpstreamUnavailable(self.name, f"unexpected content type {content_type!r} from {url}")
            audio = await response.read()
            if not audio:
                raise UpstreamUnavailable(self.name, f"empty audio from {url}")
            return audio

    async def synthesize(self, text: str, voice: str) -> bytes:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                try:
                    return await self._post(
                        session, f"{self.base_url}/api/tts", json={"text": text, "voice": voice}
                    )
                except asyncio.TimeoutError:
                    raise
                except (aiohttp.ClientError, UpstreamUnavailable) as e:
                    logger.debug(f"Remote TTS JSON request failed, retrying with raw text: {e}")

                return await self._post(
                    session,
                    self.base_url,
                    data=text.encode("utf-8"),
                    headers={"Content-Type": "text/plain; charset=utf-8"},
                )
        except asyncio.TimeoutError as e:
            raise BackendTimeout(self.name, f"no response within {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise UpstreamUnavailable(self.name, f"{type(e).__name__}: {e}") from e


@contextlib.contextmanager
def temporary_output_path(suffix: str = ".wav") -> Iterator[str]:
    """Yield a fresh temp file path and remove it on every exit path."""
    fd, path = tempfile.mkstemp(prefix="tts-", suffix=suffix)
    os.close(fd)
    try:
        yield path
    finally:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass


class LocalTTSBackend:
    """Piper-compatible engine: `engine --model <voice.onnx> --output_file <out>`, text on stdin."""

    name = "local"

    def __init__(self, engine_path: str, voices_dir: str, timeout: float = 30.0, voice_ext: str = ".onnx"):
        self.engine_path = engine_path
        self.voices_dir = voices_dir
        self.timeout = timeout
        self.voice_ext = voice_ext

    def voice_path(self, voice: str) -> str:
        return os.path.join(self.voices_dir, f"{voice}{self.voice_ext}")

    async def synthesize(self, text: str, voice: str) -> bytes:
        voice_file = self.voice_path(voice)
        if not os.path.isfile(voice_file):
            raise UpstreamUnavailable(self.name, f"voice asset missing: {voice_file}")

        with temporary_output_path() as output_path:
            try:
                process = await asyncio.create_subprocess_exec(
                    self.engine_path,
                    "--model", voice_file,
                    "--output_file", output_path,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                raise UpstreamUnavailable(self.name, f"could not start {self.engine_path}: {e}") from e

            logger.info(f"Generating Piper TTS with voice {voice}: {text[:50]!r}")
            try:
                _, stderr = await asyncio.wait_for(
                    process.communicate(input=text.encode("utf-8")), timeout=self.timeout
                )
            except asyncio.TimeoutError as e:
                await self._kill(process)
                raise BackendTimeout(self.name, f"engine did not finish within {self.timeout}s") from e
            except asyncio.CancelledError:
                await self._kill(process)
                raise

            if process.returncode != 0:
                err = (stderr.decode(errors="ignore") if stderr else "").strip()
                raise UpstreamUnavailable(self.name, f"engine exited with code {process.returncode}: {err[:200]}")

            try:
                with open(output_path, "rb") as f:
                    audio = f.read()
            except OSError as e:
                raise UpstreamUnavailable(self.name, f"could not read engine output: {e}") from e

        if not audio:
            raise UpstreamUnavailable(self.name, "engine produced an empty file")
        return audio

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process):
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()


class SyntheticTTSBackend:
    """Deterministic placeholder audio sized to the text."""

    name = "synthetic"

    def __init__(
        self,
        mode: str = "silence",
        seconds_per_char: float = 0.1,
        min_duration: float = 1.0,
        max_duration: float = 10.0,
    ):
        if mode not in ("silence", "tone"):
            raise ValueError(f"unknown synthetic mode: {mode}")
        self.mode = mode
        self.seconds_per_char = seconds_per_char
        self.min_duration = min_duration
        self.max_duration = max_duration

    def render(self, text: str) -> bytes:
        duration = placeholder_duration(text, self.seconds_per_char, self.min_duration, self.max_duration)
        start = time.time()
        audio = generate_tone_wav(duration, self.mode)
        logger.info(f"Generated {duration:.1f}s synthetic {self.mode} in {(time.time() - start) * 1000:.1f}ms")
        return audio

    async def synthesize(self, text: str, voice: str) -> bytes:
        return self.render(text)


def build_backends(backend_config: SynthesisBackendConfig, tts: TTSConfig) -> List:
    """Backends in priority order: remote, local, synthetic."""
    backends = []
    if backend_config.remote_enabled:
        backends.append(RemoteTTSBackend(backend_config.remote_url, timeout=tts.remote_timeout))
    if backend_config.local_enabled:
        backends.append(LocalTTSBackend(
            backend_config.engine_path, backend_config.voices_dir, timeout=tts.engine_timeout
        ))
    if tts.synthetic_enabled:
        backends.append(SyntheticTTSBackend(
            mode=tts.synthetic_mode,
            seconds_per_char=tts.synthetic_seconds_per_char,
            min_duration=tts.synthetic_min_duration,
            max_duration=tts.synthetic_max_duration,
        ))
    return backends
