"""
Disk cache for synthesized audio.

Each entry is a file named `<key>.wav` inside the cache directory; the
file's existence is the index. Keys are content hashes of (text, voice), so
identical requests share an entry. Total size is bounded by evicting the
least recently used files.
"""

import hashlib
import logging
import os
import tempfile
import time
from typing import Optional

from errors import CacheIOError, CacheWriteFailed

logger = logging.getLogger(__name__)

CACHE_EXTENSION = ".wav"


def compute_cache_key(text: str, voice: str) -> str:
    """Deterministic digest of the synthesis inputs."""
    hasher = hashlib.sha256()
    hasher.update(text.encode('utf-8'))
    hasher.update(b'\x00')
    hasher.update(voice.encode('utf-8'))
    return hasher.hexdigest()[:32]


class AudioCache:
    """Content-addressed audio files with LRU eviction."""

    def __init__(self, cache_dir: str, max_bytes: Optional[int] = 100 * 1024 * 1024):
        self.cache_dir = cache_dir
        self.max_bytes = max_bytes
        self._ensure_dir()

    def _ensure_dir(self):
        try:
            os.makedirs(self.cache_dir, exist_ok=True)
        except OSError as e:
            logger.warning(f"Could not create TTS cache directory {self.cache_dir}: {e}")

    def path_for(self, key: str) -> str:
        return os.path.join(self.cache_dir, f"{key}{CACHE_EXTENSION}")

    def get(self, key: str) -> Optional[bytes]:
        """Return cached bytes, or None on a miss."""
        path = self.path_for(key)
        try:
            with open(path, 'rb') as f:
                audio = f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Could not read cached audio {path}: {e}")
            return None

        # Reads refresh the LRU position
        try:
            now = time.time()
            os.utime(path, (now, now))
        except OSError:
            logger.debug(f"Could not refresh access time for {path}")
        logger.info(f"Using cached TTS audio: {path}")
        return audio

    def put(self, key: str, audio: bytes):
        """Store audio under key. Raises CacheWriteFailed on I/O errors."""
        path = self.path_for(key)
        tmp_path = None
        try:
            os.makedirs(self.cache_dir, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.cache_dir, suffix=".part")
            with os.fdopen(fd, 'wb') as f:
                f.write(audio)
            # Readers see either the old file or the complete new one
            os.replace(tmp_path, path)
            tmp_path = None
        except OSError as e:
            raise CacheWriteFailed(f"could not cache audio at {path}: {e}") from e
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)

        logger.info(f"Cached TTS audio: {path}")
        # The entry just written is never evicted; eviction trouble does not undo the write
        try:
            self.evict(keep=path)
        except CacheIOError as e:
            logger.warning(f"TTS cache eviction failed: {e}")

    def __contains__(self, key: str):
        return os.path.exists(self.path_for(key))

    def _entries(self):
        entries = []
        try:
            names = os.listdir(self.cache_dir)
        except FileNotFoundError:
            return entries
        for name in names:
            if not name.endswith(CACHE_EXTENSION):
                continue
            path = os.path.join(self.cache_dir, name)
            try:
                st = os.stat(path)
            except FileNotFoundError:
                continue
            entries.append((st.st_mtime, st.st_size, path))
        return entries

    def size_bytes(self) -> int:
        return sum(size for _, size, _ in self._entries())

    def __len__(self):
        return len(self._entries())

    def evict(self, keep: Optional[str] = None) -> int:
        """Drop least recently used entries until the cache fits max_bytes.

        `keep` names a path that survives even if it alone exceeds the limit.
        """
        if not self.max_bytes:
            return 0
        entries = sorted(self._entries())
        total = sum(size for _, size, _ in entries)
        removed = 0
        for _, size, path in entries:
            if total <= self.max_bytes:
                break
            if path == keep:
                continue
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise CacheIOError(f"could not evict {path}: {e}") from e
            total -= size
            removed += 1
            logger.info(f"Evicted {path} from TTS cache")
        return removed

    def clear(self):
        for _, _, path in self._entries():
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass
        logger.info("TTS cache cleared")
