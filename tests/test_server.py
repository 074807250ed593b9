import asyncio
import contextlib
import json

import pytest
import websockets
from websockets.asyncio.server import serve

from audio_utils import is_wav, wav_duration
from config import RelayConfig, TTSConfig
from server import VoiceRelayServer


class FakeDialogue:
    def __init__(self):
        self.calls = []

    async def complete(self, messages):
        self.calls.append([dict(m) for m in messages])
        return {"response_text": f"echo: {messages[-1]['content']}", "tokens_used": 7}


class FailingDialogue:
    async def complete(self, messages):
        raise RuntimeError("quota exceeded")


class FakeTranscriber:
    def __init__(self):
        self.languages = []

    async def transcribe(self, audio, language):
        self.languages.append(language)
        return {"transcript": f"{len(audio)} bytes", "confidence": 0.9}


def make_relay(**kwargs) -> VoiceRelayServer:
    config = RelayConfig(tts=TTSConfig())
    config.server.chunk_size = 4096
    return VoiceRelayServer(config, **kwargs)


@contextlib.asynccontextmanager
async def connect(relay: VoiceRelayServer):
    async with serve(relay.handle_connection, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        async with websockets.connect(f"ws://127.0.0.1:{port}") as ws:
            hello = json.loads(await ws.recv())
            yield ws, hello


async def request(ws, payload):
    await ws.send(json.dumps(payload))
    return json.loads(await ws.recv())


async def receive_audio(ws):
    start = json.loads(await ws.recv())
    assert start["type"] == "audio_start", start
    chunks = []
    while True:
        msg = await ws.recv()
        if isinstance(msg, bytes):
            chunks.append(msg)
            continue
        end = json.loads(msg)
        assert end["type"] == "audio_end", end
        return start, b"".join(chunks), end


def test_connect_creates_session_and_reports_tts():
    relay = make_relay()

    async def scenario():
        async with connect(relay) as (ws, hello):
            pong = await request(ws, {"type": "ping"})
            return hello, pong

    hello, pong = asyncio.run(scenario())
    assert hello["type"] == "connected"
    assert hello["session_id"] in relay.sessions
    assert hello["tts"]["mode"] == "synthetic"
    assert pong == {"type": "pong"}


def test_tts_streams_wav_and_updates_session():
    relay = make_relay()

    async def scenario():
        async with connect(relay) as (ws, hello):
            await ws.send(json.dumps({"type": "tts", "text": "Ahoj svet"}))
            start, audio, end = await receive_audio(ws)
            return hello, start, audio, end

    hello, start, audio, end = asyncio.run(scenario())
    assert start["source"] == "synthetic"
    assert start["bytes"] == len(audio)
    assert is_wav(audio)
    assert end["duration"] == pytest.approx(wav_duration(audio))

    session = relay.sessions.get(hello["session_id"])
    assert [e.content for e in session.conversation_history] == ["Ahoj svet"]
    assert session.metrics.total_audio_duration == pytest.approx(1.0)
    assert session.metrics.request_count == 1


def test_voice_settings_and_resume_session():
    relay = make_relay()

    async def scenario():
        async with connect(relay) as (ws, hello):
            updated = await request(ws, {"type": "voice_settings", "settings": {"speed": 1.5}})
        async with connect(relay) as (ws, other):
            resumed = await request(ws, {"type": "session", "session_id": hello["session_id"]})
        return hello, other, updated, resumed

    hello, other, updated, resumed = asyncio.run(scenario())
    assert updated["voice_settings"] == {"language": "sk-SK", "voice": "default", "speed": 1.5}
    assert other["session_id"] != hello["session_id"]
    assert resumed["session_id"] == hello["session_id"]
    assert resumed["voice_settings"]["speed"] == 1.5


def test_invalid_requests_return_errors_and_keep_connection():
    relay = make_relay()

    async def scenario():
        async with connect(relay) as (ws, _):
            results = [
                await request(ws, {"type": "tts", "text": ""}),
                await request(ws, {"type": "voice_settings", "settings": {"pitch": 2}}),
                await request(ws, {"type": "dance"}),
                await request(ws, {"type": "chat", "message": "hi"}),
                await request(ws, {"type": "clear_conversation"}),
            ]
            await ws.send("{not json")
            results.append(json.loads(await ws.recv()))
            results.append(await request(ws, {"type": "ping"}))
            return results

    results = asyncio.run(scenario())
    codes = [r.get("code") for r in results[:-1]]
    assert codes == [
        "invalid_input",
        "invalid_input",
        "invalid_input",
        "upstream_unavailable",  # no dialogue model configured
        "not_found",
        "invalid_input",
    ]
    assert results[-1] == {"type": "pong"}


def test_chat_records_turns_and_speaks():
    dialogue = FakeDialogue()
    relay = make_relay(dialogue=dialogue)

    async def scenario():
        async with connect(relay) as (ws, hello):
            first = await request(ws, {"type": "chat", "message": "Ahoj"})
            await ws.send(json.dumps({"type": "chat", "message": "Ako sa máš?", "speak": True}))
            second = json.loads(await ws.recv())
            start, audio, _ = await receive_audio(ws)
            cleared = await request(ws, {"type": "clear_conversation"})
            return hello, first, second, start, audio, cleared

    hello, first, second, start, audio, cleared = asyncio.run(scenario())
    assert first == {"type": "chat", "response": "echo: Ahoj", "tokens_used": 7, "message_count": 1}
    assert second["message_count"] == 2
    assert is_wav(audio)

    # the second call saw the system prompt, the first exchange, then the new message
    roles = [m["role"] for m in dialogue.calls[1]]
    assert roles == ["system", "user", "assistant", "user"]

    session = relay.sessions.get(hello["session_id"])
    kinds = [e.type for e in session.conversation_history]
    assert kinds == ["user", "assistant", "user", "assistant", "tts"]
    assert cleared["type"] == "conversation_cleared"
    assert len(relay.conversations) == 0


def test_dialogue_context_never_exceeds_turn_limit():
    dialogue = FakeDialogue()
    relay = make_relay(dialogue=dialogue)
    limit = relay.config.conversations.max_turns + 1

    async def scenario():
        async with connect(relay) as (ws, _):
            for i in range(12):
                reply = await request(ws, {"type": "chat", "message": f"správa {i}"})
                assert reply["type"] == "chat"

    asyncio.run(scenario())
    assert len(dialogue.calls) == 12
    assert max(len(call) for call in dialogue.calls) == limit
    last = dialogue.calls[-1]
    assert last[0]["role"] == "system"
    assert last[-1] == {"role": "user", "content": "správa 11"}


def test_resuming_current_session_counts_one_request():
    relay = make_relay()

    async def scenario():
        async with connect(relay) as (ws, hello):
            resumed = await request(ws, {"type": "session", "session_id": hello["session_id"]})
            return hello, resumed

    hello, resumed = asyncio.run(scenario())
    assert resumed["session_id"] == hello["session_id"]
    assert relay.sessions.get(hello["session_id"]).metrics.request_count == 1


def test_failed_dialogue_leaves_no_partial_turn():
    relay = make_relay(dialogue=FailingDialogue())

    async def scenario():
        async with connect(relay) as (ws, hello):
            error = await request(ws, {"type": "chat", "message": "Ahoj"})
            return hello, error

    hello, error = asyncio.run(scenario())
    assert error["code"] == "upstream_unavailable"
    conversation = relay.conversations.get(hello["session_id"])
    assert [m["role"] for m in conversation.messages] == ["system"]
    assert relay.sessions.get(hello["session_id"]).conversation_history == []


def test_binary_audio_is_transcribed_in_session_language():
    transcriber = FakeTranscriber()
    relay = make_relay(transcriber=transcriber)

    async def scenario():
        async with connect(relay) as (ws, _):
            await request(ws, {"type": "voice_settings", "settings": {"language": "en"}})
            await ws.send(b"\x00" * 320)
            return json.loads(await ws.recv())

    result = asyncio.run(scenario())
    assert result == {"type": "transcript", "transcript": "320 bytes", "confidence": 0.9}
    assert transcriber.languages == ["en-US"]


def test_stats_include_sessions_and_websocket_counters():
    relay = make_relay()

    async def scenario():
        async with connect(relay) as (ws, _):
            await request(ws, {"type": "ping"})
            return await request(ws, {"type": "stats"})

    stats = asyncio.run(scenario())
    assert stats["type"] == "stats"
    assert stats["sessions"]["total_sessions"] == 1
    assert stats["websocket"]["connections"] == 1
    assert stats["websocket"]["messages_received"] == 2
    assert stats["tts"]["mode"] == "synthetic"
    assert stats["active_conversations"] == 0


def test_expired_session_is_replaced_mid_connection():
    relay = make_relay()

    async def scenario():
        async with connect(relay) as (ws, hello):
            relay.sessions.destroy(hello["session_id"])
            await ws.send(json.dumps({"type": "ping"}))
            notice = json.loads(await ws.recv())
            pong = json.loads(await ws.recv())
            return hello, notice, pong

    hello, notice, pong = asyncio.run(scenario())
    assert notice["type"] == "session"
    assert notice["session_id"] != hello["session_id"]
    assert pong == {"type": "pong"}
