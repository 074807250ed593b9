"""
Audio helpers for the voice relay.

Includes:
- Deterministic placeholder WAV generation (silence or a 440 Hz tone) used
  when no real synthesis backend is available
- Linear fade-in/fade-out so the placeholder starts and ends without clicks
- WAV inspection (header check, duration) for session metrics
- Chunking of audio bytes for websocket delivery
"""

import io
import wave
from typing import List, Optional

import numpy as np

SAMPLE_RATE = 22050
SAMPLE_WIDTH = 2  # 16-bit PCM
CHANNELS = 1
TONE_FREQUENCY = 440.0
TONE_AMPLITUDE = 0.3
MAX_FADE_SECONDS = 0.1


def placeholder_duration(
    text: str,
    seconds_per_char: float = 0.1,
    min_duration: float = 1.0,
    max_duration: float = 10.0,
) -> float:
    """Duration of the placeholder for text, clamped to [min, max] seconds."""
    return max(min_duration, min(max_duration, len(text) * seconds_per_char))


def apply_fade(audio: np.ndarray, sample_rate: int = SAMPLE_RATE) -> np.ndarray:
    """Linear fade over min(100 ms, 10% of the clip) at both ends."""
    n = len(audio)
    if n == 0:
        return audio
    fade_len = int(min(MAX_FADE_SECONDS * sample_rate, 0.1 * n))
    if fade_len < 1:
        return audio

    audio = audio.copy()
    ramp = np.linspace(0.0, 1.0, fade_len, endpoint=False, dtype=np.float32)
    audio[:fade_len] *= ramp
    audio[-fade_len:] *= ramp[::-1]
    return audio


def float32_to_wav(audio: np.ndarray, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Encode float32 samples in [-1, 1] as a mono 16-bit PCM WAV."""
    audio = np.clip(audio, -1.0, 1.0)
    pcm16 = (audio * 32767).astype('<i2')

    buf = io.BytesIO()
    with wave.open(buf, 'wb') as wav:
        wav.setnchannels(CHANNELS)
        wav.setsampwidth(SAMPLE_WIDTH)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm16.tobytes())
    return buf.getvalue()


def generate_tone_wav(
    duration: float,
    mode: str = "silence",
    sample_rate: int = SAMPLE_RATE,
    frequency: float = TONE_FREQUENCY,
) -> bytes:
    """Build a placeholder WAV of the given duration.

    Args:
        duration: Length in seconds
        mode: "silence" or "tone"
        sample_rate: Output sample rate (default 22050)
        frequency: Tone frequency when mode is "tone"

    Returns:
        WAV file bytes (RIFF/WAVE, mono, 16-bit PCM)
    """
    n_samples = int(sample_rate * duration)
    if mode == "tone":
        t = np.arange(n_samples, dtype=np.float32) / sample_rate
        audio = (TONE_AMPLITUDE * np.sin(2 * np.pi * frequency * t)).astype(np.float32)
    elif mode == "silence":
        audio = np.zeros(n_samples, dtype=np.float32)
    else:
        raise ValueError(f"unknown placeholder mode: {mode}")

    return float32_to_wav(apply_fade(audio, sample_rate), sample_rate)


def is_wav(audio: bytes) -> bool:
    return len(audio) >= 12 and audio[0:4] == b'RIFF' and audio[8:12] == b'WAVE'


def wav_duration(audio: bytes) -> Optional[float]:
    """Seconds of audio in a WAV buffer, or None if it cannot be parsed."""
    if not is_wav(audio):
        return None
    try:
        with wave.open(io.BytesIO(audio), 'rb') as wav:
            rate = wav.getframerate()
            if rate <= 0:
                return None
            return wav.getnframes() / float(rate)
    except (wave.Error, EOFError):
        return None


def chunk_audio(audio_bytes: bytes, chunk_size: int = 32 * 1024) -> List[bytes]:
    """Split audio into chunks of at most chunk_size bytes.

    Unlike raw telephony frames the last chunk is not padded: the
    receiver reassembles a complete WAV file.
    """
    return [audio_bytes[i:i + chunk_size] for i in range(0, len(audio_bytes), chunk_size)]
