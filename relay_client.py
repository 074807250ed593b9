#!/usr/bin/env python3
"""Diagnostic client for the Voice Relay WebSocket server."""

import asyncio
import json
from typing import Optional

import websockets

from audio_utils import is_wav, wav_duration


async def request_speech(
    ws_url: str = "ws://localhost:3000",
    text: str = "Toto je test hlasového servera.",
    voice: Optional[str] = None,
    session_id: Optional[str] = None,
    output_path: str = "output.wav",
) -> Optional[bytes]:
    """Ask the server to synthesize text and save the returned WAV."""
    print(f"Connecting to {ws_url}...")

    async with websockets.connect(ws_url, max_size=50*1024*1024) as ws:
        # Wait for connected message
        data = json.loads(await ws.recv())
        print(f"Connected: session={data.get('session_id')} tts={data.get('tts')}")

        if session_id:
            await ws.send(json.dumps({"type": "session", "session_id": session_id}))
            data = json.loads(await ws.recv())
            print(f"Session: {data}")

        print(f"Requesting speech for: {text}")
        request = {"type": "tts", "text": text}
        if voice:
            request["voice"] = voice
        await ws.send(json.dumps(request))

        audio_chunks = []
        while True:
            msg = await ws.recv()

            if isinstance(msg, bytes):
                audio_chunks.append(msg)
                continue

            data = json.loads(msg)
            print(f"Message: {data}")
            if data.get("type") == "audio_end":
                break
            elif data.get("type") == "error":
                print(f"Error: {data.get('message')}")
                return None

    audio = b"".join(audio_chunks)
    if not audio:
        print("No audio received")
        return None

    with open(output_path, 'wb') as f:
        f.write(audio)
    if is_wav(audio):
        print(f"Saved {len(audio)} bytes ({wav_duration(audio) or 0:.2f}s) to {output_path}")
    else:
        print(f"Saved {len(audio)} bytes to {output_path} (no WAV header)")
    return audio


def main():
    import argparse

    parser = argparse.ArgumentParser(description="Test the Voice Relay WebSocket server")
    parser.add_argument("--url", default="ws://localhost:3000", help="WebSocket URL")
    parser.add_argument("--text", default="Toto je test hlasového servera.", help="Text to synthesize")
    parser.add_argument("--voice", help="Voice id")
    parser.add_argument("--session-id", help="Resume an existing session")
    parser.add_argument("--output", default="output.wav", help="Output WAV file")

    args = parser.parse_args()

    asyncio.run(request_speech(
        ws_url=args.url,
        text=args.text,
        voice=args.voice,
        session_id=args.session_id,
        output_path=args.output,
    ))


if __name__ == "__main__":
    main()
