from typing import Dict, List, Protocol, TypedDict

# --------- Types ---------
class TranscriptResult(TypedDict):
    transcript: str
    """
    Recognized text.
    """
    confidence: float
    """
    Recognizer confidence in [0, 1].
    """


class DialogueReply(TypedDict):
    response_text: str
    """
    Assistant reply to speak back.
    """
    tokens_used: int
    """
    Tokens billed for the completion.
    """


# --------- Protocols ---------
class Transcriber(Protocol):
    """
    Speech-to-text collaborator (Deepgram in production).
    """
    async def transcribe(self, audio: bytes, language: str) -> TranscriptResult: ...


class DialogueModel(Protocol):
    """
    Language-model collaborator (OpenAI chat completions in production).
    """
    async def complete(self, messages: List[Dict[str, str]]) -> DialogueReply:
        """
        Messages are ordered {role, content} turns, system prompt first.
        """
        ...
