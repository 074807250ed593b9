import io
import wave

import numpy as np
import pytest

from audio_cache import AudioCache, compute_cache_key
from audio_utils import (
    SAMPLE_RATE,
    apply_fade,
    chunk_audio,
    generate_tone_wav,
    is_wav,
    placeholder_duration,
    wav_duration,
)


def read_samples(wav_bytes: bytes) -> np.ndarray:
    with wave.open(io.BytesIO(wav_bytes), 'rb') as wav:
        assert wav.getnchannels() == 1
        assert wav.getsampwidth() == 2
        assert wav.getframerate() == SAMPLE_RATE
        return np.frombuffer(wav.readframes(wav.getnframes()), dtype='<i2')


def test_placeholder_duration_is_clamped():
    assert placeholder_duration("hello") == 1.0           # 0.5s -> min 1s
    assert placeholder_duration("x" * 35) == pytest.approx(3.5)
    assert placeholder_duration("x" * 500) == 10.0        # capped
    assert placeholder_duration("hi", min_duration=2.0) == 2.0


def test_silence_wav_header_and_length():
    audio = generate_tone_wav(1.0)
    assert audio[:4] == b'RIFF'
    assert audio[8:12] == b'WAVE'
    assert is_wav(audio)
    samples = read_samples(audio)
    assert samples.size == SAMPLE_RATE
    assert not samples.any()
    assert wav_duration(audio) == pytest.approx(1.0)


def test_tone_fades_in_and_out():
    samples = read_samples(generate_tone_wav(2.0, mode="tone")).astype(np.float32)
    assert samples[0] == 0
    assert samples[-1] == 0
    fade = int(0.1 * SAMPLE_RATE)
    # the body of the clip reaches full amplitude, the edges do not
    assert np.abs(samples[fade:-fade]).max() > 0.29 * 32767
    assert np.abs(samples[:fade // 10]).max() < 0.05 * 32767


def test_tone_is_deterministic():
    assert generate_tone_wav(1.5, mode="tone") == generate_tone_wav(1.5, mode="tone")


def test_unknown_mode_rejected():
    with pytest.raises(ValueError):
        generate_tone_wav(1.0, mode="noise")


def test_fade_uses_ten_percent_on_short_clips():
    audio = np.ones(500, dtype=np.float32)
    faded = apply_fade(audio)
    assert faded[0] == 0.0
    assert faded[50] == 1.0  # fade length is 50 samples
    assert faded[-1] == 0.0
    assert audio[0] == 1.0   # input untouched


def test_wav_duration_rejects_non_wav():
    assert wav_duration(b"not a wav file at all") is None
    assert not is_wav(b"RIFF")


def test_chunk_audio_reassembles():
    data = bytes(range(256)) * 10
    chunks = chunk_audio(data, 1000)
    assert [len(c) for c in chunks] == [1000, 1000, 560]
    assert b"".join(chunks) == data
    assert chunk_audio(b"", 10) == []


def test_cache_key_is_deterministic_and_separates_fields():
    assert compute_cache_key("hello", "v1") == compute_cache_key("hello", "v1")
    assert compute_cache_key("hello", "v1") != compute_cache_key("hello", "v2")
    assert compute_cache_key("a-b", "c") != compute_cache_key("a", "b-c")


def test_cache_roundtrip_on_disk(tmp_path):
    cache = AudioCache(str(tmp_path / "cache"))
    key = compute_cache_key("hello", "v1")
    assert cache.get(key) is None
    cache.put(key, b"RIFF....WAVEdata")
    assert key in cache
    assert cache.get(key) == b"RIFF....WAVEdata"
    assert (tmp_path / "cache" / f"{key}.wav").exists()
    # no leftover temp files
    assert len(list((tmp_path / "cache").iterdir())) == 1


def test_cache_evicts_least_recently_used(tmp_path):
    import os

    cache = AudioCache(str(tmp_path), max_bytes=None)
    for i, key in enumerate(["a", "b", "c"]):
        cache.put(key, bytes(100))
        # spread modification times so eviction order is unambiguous
        os.utime(cache.path_for(key), (1000 + i, 1000 + i))
    assert cache.evict() == 0

    cache.max_bytes = 250
    assert cache.evict() == 1
    assert "a" not in cache
    assert "b" in cache and "c" in cache
    assert cache.size_bytes() == 200


def test_cache_keeps_entry_just_written_even_if_oversized(tmp_path):
    cache = AudioCache(str(tmp_path), max_bytes=50)
    cache.put("big", bytes(100))
    assert "big" in cache
    assert cache.get("big") == bytes(100)

    # the next write pushes the oversized entry out instead
    cache.put("small", bytes(10))
    assert "small" in cache
    assert "big" not in cache


def test_cache_eviction_failure_does_not_fail_put(tmp_path, monkeypatch):
    from errors import CacheIOError

    cache = AudioCache(str(tmp_path), max_bytes=50)

    def broken_evict(keep=None):
        raise CacheIOError("permission denied")

    monkeypatch.setattr(cache, "evict", broken_evict)
    cache.put("k", bytes(100))
    assert cache.get("k") == bytes(100)


def test_cache_clear(tmp_path):
    cache = AudioCache(str(tmp_path))
    cache.put("k", b"x")
    cache.clear()
    assert len(cache) == 0


def test_cache_read_refreshes_recency(tmp_path):
    import os

    cache = AudioCache(str(tmp_path), max_bytes=None)
    for i, key in enumerate(["a", "b"]):
        cache.put(key, bytes(100))
        os.utime(cache.path_for(key), (1000 + i, 1000 + i))
    assert cache.get("a") is not None  # "a" becomes most recent

    cache.max_bytes = 150
    cache.evict()
    assert "a" in cache
    assert "b" not in cache
