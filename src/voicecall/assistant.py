"""
The AI side of a call.

An Assistant holds the instructions and model choices, builds the opening
prompt, turns dialogue history into the next spoken line, and synthesizes it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence

import structlog

from src.voicecall.calls.base import AudioSpec, CallTransport
from src.voicecall.calls.browser_vad import BrowserVADCall
from src.voicecall.config import Config
from src.voicecall.conversation import Conversation
from src.voicecall.llm import (
    DEFAULT_SYSTEM_PROMPT,
    END_CALL_TOKEN,
    END_CALL_TOOL,
    INSTRUCTION_PROMPT_BASE,
    TOOL_HANG_UP,
    TOOLS_NONE,
    ChatLLM,
)
from src.voicecall.providers import Providers
from src.voicecall.stt import SpeechToText
from src.voicecall.tts import TextToSpeech
from src.voicecall.tts_types import TTSAudioFormat

logger = structlog.get_logger(__name__)

Message = Dict[str, str]


@dataclass
class AssistantResponse:
    content: str
    selected_tool: Optional[str] = None


class Assistant:
    """
    Defines an AI call assistant.

    Args:
        instructions: What the assistant should do on the call
        providers: Shared API clients
        system_prompt: Replaces the default persona prompt
        speak_first: Speak as soon as the call is ready
        opening_message: Fixed first line; generated when empty
        can_hang_up: Offer the `[endCall]` tool
        llm_model: Chat model
        voice_model: TTS model id ("provider/model")
        voice_name: TTS voice
        stt_model: STT model id for browser calls
        tts_format: Raw audio format for synthesized speech
    """

    def __init__(
        self,
        instructions: str,
        providers: Providers,
        *,
        system_prompt: Optional[str] = None,
        speak_first: bool = True,
        opening_message: Optional[str] = None,
        can_hang_up: bool = True,
        llm_model: str = "gpt-3.5-turbo",
        voice_model: str = "openai/tts-1",
        voice_name: str = "shimmer",
        stt_model: str = "openai/whisper-1",
        tts_format: TTSAudioFormat = TTSAudioFormat.PCM_24K,
    ):
        self.instructions = instructions
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self.tools = TOOL_HANG_UP if can_hang_up else TOOLS_NONE
        self.speak_first = speak_first
        self.opening_message = opening_message or None
        self.llm_model = llm_model
        self.voice_model = voice_model
        self.voice_name = voice_name
        self.stt_model = stt_model
        self.tts_format = TTSAudioFormat(tts_format)

        self._providers = providers
        self._llm = ChatLLM(providers.openai, llm_model)
        self._tts = TextToSpeech(voice_model, voice_name, providers, self.tts_format)

    @classmethod
    def from_config(
        cls,
        config: Config,
        providers: Providers,
        *,
        telephony: bool = False,
    ) -> "Assistant":
        """Browser or telephony assistant with the configured models."""
        if telephony:
            voice_model = config.telephony_tts_model
            voice_name = config.telephony_tts_voice
            tts_format = TTSAudioFormat.MULAW_8K
        else:
            voice_model = config.tts_model
            voice_name = config.tts_voice
            tts_format = TTSAudioFormat.PCM_24K

        return cls(
            config.assistant_instructions,
            providers,
            speak_first=config.speak_first,
            opening_message=config.opening_message,
            can_hang_up=config.can_hang_up,
            llm_model=config.llm_model,
            voice_model=voice_model,
            voice_name=voice_name,
            stt_model=config.stt_model,
            tts_format=tts_format,
        )

    @property
    def prompt(self) -> List[Message]:
        """Fresh opening history: system prompt plus the instruction message."""
        instruction_prompt = INSTRUCTION_PROMPT_BASE.replace(
            "{instructions}", self.instructions
        ).replace("{tools}", self.tools)
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": instruction_prompt},
        ]

    def describe(self) -> str:
        """JSON summary for the call log."""
        return json.dumps(
            {
                "instructions": self.instructions,
                "speak_first": self.speak_first,
                "opening_message": self.opening_message,
                "can_hang_up": self.tools != TOOLS_NONE,
                "llm_model": self.llm_model,
                "voice_model": self.voice_model,
                "voice_name": self.voice_name,
                "stt_model": self.stt_model,
                "tts_format": self.tts_format.value,
            }
        )

    async def create_response(self, history: Sequence[Message]) -> AssistantResponse:
        """Generate the next assistant line for `history`."""
        response = await self._llm.complete(list(history))
        content = response.text

        if END_CALL_TOKEN in content:
            content = content.replace(END_CALL_TOKEN, "").strip()
            return AssistantResponse(content=content, selected_tool=END_CALL_TOOL)

        return AssistantResponse(content=content.strip())

    async def text_to_speech(self, text: str) -> bytes:
        return await self._tts.synthesize(text)

    def stream_speech(self, text: str, spec: Optional[AudioSpec] = None) -> AsyncIterator[bytes]:
        if spec is not None and spec.tts_format != self.tts_format:
            raise ValueError(
                f"Assistant speaks {self.tts_format.value}, transport needs {spec.tts_format.value}"
            )
        return self._tts.stream(text)

    def create_conversation(
        self,
        transport: CallTransport,
        on_end: Optional[Callable[[tuple], Optional[Awaitable[None]]]] = None,
    ) -> Conversation:
        """Browser conversation on `transport` with this assistant."""
        stt = SpeechToText(self.stt_model, self._providers)
        call = BrowserVADCall(transport, stt)
        return Conversation(self, call, on_end=on_end)
