"""
Configuration for the voice relay.

Values come from the environment (the variable names existing Piper
deployments already use) and can be overridden on the command line
by server.main().
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional


def _env_str(env: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    value = env.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    value = env.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name)
    if value is None or not value.strip():
        return default
    return int(value.strip())


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    value = env.get(name)
    if value is None or not value.strip():
        return default
    return float(value.strip())


@dataclass
class TTSConfig:
    remote_url: Optional[str] = None
    remote_timeout: float = 10.0
    engine_path: Optional[str] = None
    voices_dir: str = "./voices"
    engine_timeout: float = 30.0
    default_voice: str = "sk-SK-female"
    max_text_length: int = 1000
    cache_enabled: bool = False
    cache_dir: str = "./tmp/tts_cache"
    cache_max_bytes: int = 100 * 1024 * 1024
    synthetic_enabled: bool = True
    synthetic_mode: str = "silence"  # or "tone"
    synthetic_seconds_per_char: float = 0.1
    synthetic_min_duration: float = 1.0
    synthetic_max_duration: float = 10.0


@dataclass
class SessionConfig:
    max_age: float = 24 * 60 * 60
    sweep_interval: float = 60 * 60
    active_window: float = 5 * 60
    max_history: int = 50


@dataclass
class ConversationConfig:
    ttl: float = 30 * 60
    sweep_interval: float = 5 * 60
    max_turns: int = 20
    system_prompt: str = (
        "Si užitočný AI asistent. Odpovedaj v slovenčine, buď stručný a priateľský. "
        "Ak dostaneš otázku v inom jazyku, odpovedaj v tom istom jazyku."
    )
    max_message_length: int = 2000


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    max_message_size: int = 50 * 1024 * 1024
    chunk_size: int = 32 * 1024


@dataclass
class RelayConfig:
    tts: TTSConfig = field(default_factory=TTSConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    conversations: ConversationConfig = field(default_factory=ConversationConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "RelayConfig":
        env = os.environ if env is None else env
        tts_defaults = TTSConfig()
        tts = TTSConfig(
            remote_url=_env_str(env, "PIPER_TTS_URL"),
            remote_timeout=_env_float(env, "TTS_REMOTE_TIMEOUT", tts_defaults.remote_timeout),
            engine_path=_env_str(env, "PIPER_PATH"),
            voices_dir=_env_str(env, "PIPER_VOICES_PATH", tts_defaults.voices_dir),
            engine_timeout=_env_float(env, "PIPER_TIMEOUT", tts_defaults.engine_timeout),
            default_voice=_env_str(env, "TTS_VOICE", tts_defaults.default_voice),
            max_text_length=_env_int(env, "TTS_MAX_TEXT_LENGTH", tts_defaults.max_text_length),
            cache_enabled=_env_bool(env, "TTS_CACHE_ENABLED", tts_defaults.cache_enabled),
            cache_dir=_env_str(env, "TTS_CACHE_DIR", tts_defaults.cache_dir),
            cache_max_bytes=_env_int(env, "TTS_CACHE_MAX_BYTES", tts_defaults.cache_max_bytes),
            synthetic_enabled=_env_bool(env, "TTS_SYNTHETIC_ENABLED", tts_defaults.synthetic_enabled),
            synthetic_mode=_env_str(env, "TTS_SYNTHETIC_MODE", tts_defaults.synthetic_mode),
        )
        session_defaults = SessionConfig()
        sessions = SessionConfig(
            max_age=_env_float(env, "RELAY_SESSION_MAX_AGE", session_defaults.max_age),
            sweep_interval=_env_float(env, "RELAY_SESSION_SWEEP_INTERVAL", session_defaults.sweep_interval),
            max_history=_env_int(env, "RELAY_SESSION_MAX_HISTORY", session_defaults.max_history),
        )
        conv_defaults = ConversationConfig()
        conversations = ConversationConfig(
            ttl=_env_float(env, "RELAY_CONVERSATION_TTL", conv_defaults.ttl),
            sweep_interval=_env_float(env, "RELAY_CONVERSATION_SWEEP_INTERVAL", conv_defaults.sweep_interval),
            max_turns=_env_int(env, "RELAY_CONVERSATION_MAX_TURNS", conv_defaults.max_turns),
            system_prompt=_env_str(env, "OPENAI_SYSTEM_PROMPT", conv_defaults.system_prompt),
        )
        server_defaults = ServerConfig()
        server = ServerConfig(
            host=_env_str(env, "HOST", server_defaults.host),
            port=_env_int(env, "PORT", server_defaults.port),
        )
        return cls(tts=tts, sessions=sessions, conversations=conversations, server=server)


class BackendMode(Enum):
    NONE = "synthetic"
    REMOTE = "remote"
    LOCAL = "local"
    BOTH = "both"


@dataclass(frozen=True)
class SynthesisBackendConfig:
    """Which real synthesis backends exist, resolved once at startup."""
    mode: BackendMode
    remote_url: Optional[str] = None
    engine_path: Optional[str] = None
    voices_dir: Optional[str] = None

    @classmethod
    def resolve(cls, tts: TTSConfig) -> "SynthesisBackendConfig":
        has_remote = bool(tts.remote_url)
        has_local = bool(tts.engine_path)
        if has_remote and has_local:
            mode = BackendMode.BOTH
        elif has_remote:
            mode = BackendMode.REMOTE
        elif has_local:
            mode = BackendMode.LOCAL
        else:
            mode = BackendMode.NONE
        return cls(
            mode=mode,
            remote_url=tts.remote_url.rstrip("/") if has_remote else None,
            engine_path=tts.engine_path if has_local else None,
            voices_dir=tts.voices_dir if has_local else None,
        )

    @property
    def remote_enabled(self) -> bool:
        return self.mode in (BackendMode.REMOTE, BackendMode.BOTH)

    @property
    def local_enabled(self) -> bool:
        return self.mode in (BackendMode.LOCAL, BackendMode.BOTH)
