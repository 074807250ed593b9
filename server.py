#!/usr/bin/env python3
"""
Voice Relay WebSocket Server

Relays voice-chat traffic between a client and third-party speech services:
speech-to-text, a dialogue model and text-to-speech (with fallback).

Protocol:
- Connect to ws://host:port/
- Send JSON messages for control, binary messages for recorded audio
- Receive JSON status messages and binary WAV chunks

Message Types (client -> server):
- {"type": "session", "session_id": "..."}       resume an existing session
- {"type": "voice_settings", "settings": {...}}  e.g. {"speed": 1.5}
- {"type": "tts", "text": "...", "voice": "..."}
- {"type": "chat", "message": "...", "speak": true}
- {"type": "clear_conversation"}
- {"type": "voices"} / {"type": "stats"} / {"type": "ping"}
- Binary data: recorded audio to transcribe

Message Types (server -> client):
- {"type": "connected", "session_id": "...", "tts": {...}}
- {"type": "session", "session_id": "...", "voice_settings": {...}}
- {"type": "audio_start", "source": "...", "cached": false, "bytes": N}
- Binary data: WAV file split into chunks
- {"type": "audio_end"}
- {"type": "transcript", "transcript": "...", "confidence": 0.9}
- {"type": "chat", "response": "...", "tokens_used": N}
- {"type": "error", "code": "...", "message": "..."}
"""

import asyncio
import json
import logging
import time
from dataclasses import asdict
from typing import Any, Dict, List, Optional

import websockets
from websockets.asyncio.server import ServerConnection, serve

from audio_utils import chunk_audio, wav_duration
from config import RelayConfig
from contracts import DialogueModel, Transcriber
from errors import InvalidInput, RelayError, UpstreamUnavailable
from metrics import RelayMetrics
from session import ConversationStore, Session, SessionStore, run_periodic
from synthesis import SpeechSynthesisCascade

logger = logging.getLogger(__name__)


class VoiceRelayServer:
    """WebSocket server composing sessions, collaborators and the TTS cascade."""

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        cascade: Optional[SpeechSynthesisCascade] = None,
        transcriber: Optional[Transcriber] = None,
        dialogue: Optional[DialogueModel] = None,
        metrics: Optional[RelayMetrics] = None,
    ):
        self.config = config or RelayConfig()
        self.metrics = metrics or RelayMetrics()
        self.sessions = SessionStore(
            max_age=self.config.sessions.max_age,
            max_history=self.config.sessions.max_history,
            active_window=self.config.sessions.active_window,
        )
        self.conversations = ConversationStore(
            system_prompt=self.config.conversations.system_prompt,
            max_turns=self.config.conversations.max_turns,
            ttl=self.config.conversations.ttl,
        )
        self.cascade = cascade or SpeechSynthesisCascade.from_config(self.config.tts, metrics=self.metrics)
        self.transcriber = transcriber
        self.dialogue = dialogue
        self._sweepers: List[asyncio.Task] = []

    async def _send_json(self, websocket: ServerConnection, payload: Dict[str, Any]):
        await websocket.send(json.dumps(payload))
        self.metrics.track("websocket", "message_sent")

    async def _send_error(self, websocket: ServerConnection, error: Exception):
        if isinstance(error, RelayError):
            payload = {"type": "error", "code": error.code, "message": str(error)}
        else:
            payload = {"type": "error", "code": "internal_error", "message": "Failed to process message"}
        await self._send_json(websocket, payload)

    def _session_payload(self, session: Session) -> Dict[str, Any]:
        return {
            "type": "session",
            "session_id": session.id,
            "voice_settings": asdict(session.voice_settings),
            "history_length": len(session.conversation_history),
        }

    async def handle_session(self, websocket: ServerConnection, session: Session, data: Dict[str, Any]) -> Session:
        """Switch the connection to an existing session (or a fresh one)."""
        requested = data.get("session_id")
        # The message loop has already touched the current session
        if requested and requested != session.id:
            session = self.sessions.get_or_create(requested)
        await self._send_json(websocket, self._session_payload(session))
        return session

    async def handle_voice_settings(self, websocket: ServerConnection, session: Session, data: Dict[str, Any]):
        settings = data.get("settings")
        if not isinstance(settings, dict):
            raise InvalidInput("settings must be an object")
        self.sessions.update_voice_settings(session, settings)
        await self._send_json(websocket, self._session_payload(session))

    def _voice_for(self, session: Session, requested: Optional[str]) -> Optional[str]:
        if requested:
            return requested
        voice = session.voice_settings.voice
        # "default" defers to the cascade's configured voice
        return None if voice == "default" else voice

    async def handle_tts(self, websocket: ServerConnection, session: Session, data: Dict[str, Any]):
        """Synthesize text and stream the WAV back."""
        text = data.get("text")
        result = await self.cascade.synthesize(text, self._voice_for(session, data.get("voice")))

        self.sessions.append_history(session, "tts", text)
        duration = wav_duration(result.audio_bytes)
        if duration:
            self.sessions.add_audio_duration(session, duration)

        await self._send_json(websocket, {
            "type": "audio_start",
            "source": result.source_backend,
            "cached": result.cached,
            "bytes": len(result.audio_bytes),
        })
        for chunk in chunk_audio(result.audio_bytes, self.config.server.chunk_size):
            await websocket.send(chunk)
            self.metrics.track("websocket", "message_sent")
        await self._send_json(websocket, {"type": "audio_end", "duration": duration})

    async def handle_chat(self, websocket: ServerConnection, session: Session, data: Dict[str, Any]):
        message = data.get("message")
        if not isinstance(message, str) or not message.strip():
            raise InvalidInput("message is required and must be a non-empty string")
        if len(message) > self.config.conversations.max_message_length:
            raise InvalidInput(
                f"message must be at most {self.config.conversations.max_message_length} characters"
            )
        if self.dialogue is None:
            raise UpstreamUnavailable("dialogue", "no dialogue model configured")

        conversation = self.conversations.get_or_create(session.id)
        turns = self.conversations.trim(list(conversation.messages) + [{"role": "user", "content": message}])
        start = time.time()
        try:
            reply = await self.dialogue.complete(turns)
        except RelayError:
            raise
        except Exception as e:
            self.metrics.track("chat", "error", duration_ms=(time.time() - start) * 1000)
            raise UpstreamUnavailable("dialogue", str(e)) from e
        self.metrics.track(
            "chat", "complete",
            duration_ms=(time.time() - start) * 1000,
            tokens_used=reply.get("tokens_used", 0),
        )

        # Record the turn only once the reply is in
        response_text = reply["response_text"]
        self.conversations.add_message(conversation, "user", message)
        self.conversations.add_message(conversation, "assistant", response_text)
        self.sessions.append_history(session, "user", message)
        self.sessions.append_history(session, "assistant", response_text)

        await self._send_json(websocket, {
            "type": "chat",
            "response": response_text,
            "tokens_used": reply.get("tokens_used", 0),
            "message_count": conversation.message_count,
        })
        if data.get("speak"):
            await self.handle_tts(websocket, session, {"text": response_text})

    async def handle_audio(self, websocket: ServerConnection, session: Session, audio: bytes):
        if self.transcriber is None:
            raise UpstreamUnavailable("transcription", "no transcriber configured")
        if not audio:
            raise InvalidInput("audio message is empty")

        start = time.time()
        try:
            result = await self.transcriber.transcribe(audio, session.voice_settings.language)
        except RelayError:
            raise
        except Exception as e:
            self.metrics.track("transcription", "error", duration_ms=(time.time() - start) * 1000)
            raise UpstreamUnavailable("transcription", str(e)) from e
        self.metrics.track("transcription", "transcribe", duration_ms=(time.time() - start) * 1000)

        self.sessions.append_history(session, "transcript", result["transcript"])
        await self._send_json(websocket, {
            "type": "transcript",
            "transcript": result["transcript"],
            "confidence": result["confidence"],
        })

    async def handle_clear_conversation(self, websocket: ServerConnection, session: Session):
        self.conversations.clear_or_raise(session.id)
        await self._send_json(websocket, {"type": "conversation_cleared", "session_id": session.id})

    def stats(self) -> Dict[str, Any]:
        snapshot = self.metrics.snapshot(self.sessions.stats().to_dict())
        snapshot["active_conversations"] = self.conversations.active_conversations
        snapshot["tts"] = self.cascade.status()
        return snapshot

    async def dispatch(self, websocket: ServerConnection, session: Session, data: Dict[str, Any]) -> Session:
        msg_type = data.get("type", "")

        if msg_type == "session":
            return await self.handle_session(websocket, session, data)
        elif msg_type == "voice_settings":
            await self.handle_voice_settings(websocket, session, data)
        elif msg_type == "tts":
            await self.handle_tts(websocket, session, data)
        elif msg_type == "chat":
            await self.handle_chat(websocket, session, data)
        elif msg_type == "clear_conversation":
            await self.handle_clear_conversation(websocket, session)
        elif msg_type == "voices":
            await self._send_json(websocket, {"type": "voices", **self.cascade.voices()})
        elif msg_type == "stats":
            await self._send_json(websocket, {"type": "stats", **self.stats()})
        elif msg_type == "ping":
            await self._send_json(websocket, {"type": "pong"})
        else:
            raise InvalidInput(f"Unknown message type: {msg_type!r}")
        return session

    async def handle_connection(self, websocket: ServerConnection):
        """Handle a WebSocket connection."""
        session = self.sessions.get_or_create()
        self.metrics.track("websocket", "connect")
        logger.info(f"New connection: {websocket.remote_address} session={session.id}")

        try:
            await self._send_json(websocket, {
                "type": "connected",
                "session_id": session.id,
                "tts": self.cascade.status(),
            })

            async for message in websocket:
                self.metrics.track("websocket", "message_received")

                # Every message counts as a request against the session
                previous_id = session.id
                session = self.sessions.get_or_create(session.id)
                if session.id != previous_id:
                    logger.info(f"Session {previous_id} expired, continuing as {session.id}")
                    await self._send_json(websocket, self._session_payload(session))

                try:
                    if isinstance(message, bytes):
                        await self.handle_audio(websocket, session, message)
                        continue
                    try:
                        data = json.loads(message)
                    except json.JSONDecodeError:
                        logger.error(f"Invalid JSON: {message[:100]}")
                        raise InvalidInput("message is not valid JSON")
                    if not isinstance(data, dict):
                        raise InvalidInput("message must be a JSON object")
                    session = await self.dispatch(websocket, session, data)
                except RelayError as e:
                    logger.warning(f"Request failed for session {session.id}: {e}")
                    await self._send_error(websocket, e)
                except websockets.exceptions.ConnectionClosed:
                    raise
                except Exception as e:
                    logger.exception(f"Error handling message for session {session.id}: {e}")
                    await self._send_error(websocket, e)

        except websockets.exceptions.ConnectionClosed:
            logger.info(f"Connection closed: session={session.id}")
        finally:
            self.metrics.track("websocket", "disconnect")

    def start_sweepers(self):
        """Start the background expiry loops for both stores."""
        self._sweepers = [
            asyncio.create_task(run_periodic(
                "sessions", self.config.sessions.sweep_interval, self.sessions.sweep_expired
            )),
            asyncio.create_task(run_periodic(
                "conversations", self.config.conversations.sweep_interval, self.conversations.sweep_expired
            )),
        ]

    async def stop_sweepers(self):
        for task in self._sweepers:
            task.cancel()
        await asyncio.gather(*self._sweepers, return_exceptions=True)
        self._sweepers = []

    async def run(self):
        """Start the WebSocket server."""
        host = self.config.server.host
        port = self.config.server.port
        logger.info(f"Starting WebSocket server on {host}:{port}")

        self.start_sweepers()
        try:
            async with serve(
                self.handle_connection,
                host,
                port,
                max_size=self.config.server.max_message_size,
            ):
                await asyncio.Future()
        finally:
            await self.stop_sweepers()


def main():
    import argparse

    config = RelayConfig.from_env()

    parser = argparse.ArgumentParser(description="Voice Relay WebSocket Server")
    parser.add_argument("--host", default=config.server.host)
    parser.add_argument("--port", "-p", type=int, default=config.server.port)
    parser.add_argument("--remote-tts-url", default=config.tts.remote_url,
                        help="Base URL of a remote TTS service (PIPER_TTS_URL)")
    parser.add_argument("--piper-path", default=config.tts.engine_path,
                        help="Local TTS engine executable (PIPER_PATH)")
    parser.add_argument("--voices-dir", default=config.tts.voices_dir)
    parser.add_argument("--voice", default=config.tts.default_voice, help="Default voice id")
    parser.add_argument("--cache", action=argparse.BooleanOptionalAction, default=config.tts.cache_enabled,
                        help="Cache synthesized audio on disk")
    parser.add_argument("--cache-dir", default=config.tts.cache_dir)
    parser.add_argument("--synthetic-mode", choices=["silence", "tone"], default=config.tts.synthetic_mode)
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s | %(levelname)s | %(message)s'
    )
    # Reduce noisy upstream logs
    for _name in ("websockets", "aiohttp"):
        logging.getLogger(_name).setLevel(logging.WARNING)

    config.server.host = args.host
    config.server.port = args.port
    config.tts.remote_url = args.remote_tts_url
    config.tts.engine_path = args.piper_path
    config.tts.voices_dir = args.voices_dir
    config.tts.default_voice = args.voice
    config.tts.cache_enabled = args.cache
    config.tts.cache_dir = args.cache_dir
    config.tts.synthetic_mode = args.synthetic_mode

    server = VoiceRelayServer(config)
    try:
        asyncio.run(server.run())
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    main()
