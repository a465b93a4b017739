"""
Chat LLM client (OpenAI-compatible API) and the assistant's prompt text.

Provides:
- Startup model validation
- Single-shot chat completions over a full dialogue history
- Prompt constants for the system and instruction messages
"""

import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import httpx
import structlog
from openai import AsyncOpenAI

from src.voicecall.config import ConfigError

logger = structlog.get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are a delightful AI voice agent.
Please be polite but concise.
Show a bit of personality.
Your text will be passed to a Text-To-Speech model.
Please respond with an answer that is going to be transcribed well and add uhs, ums, mhms, and other disfluencies as needed to keep it casual.
Respond ONLY with the text to be spoken.
DO NOT add any prefix.
The dialogue is transcribed and might be a bit wrong if the speech to text is bad.
Don't be afraid to ask to clarify if you don't understand what the customer said because you may have misheard."""

INSTRUCTION_PROMPT_BASE = """
INSTRUCTIONS
{instructions}

TOOLS
{tools}
"""

END_CALL_TOKEN = "[endCall]"
END_CALL_TOOL = "endCall"

TOOL_HANG_UP = (
    "[endCall] : You can use the token [endCall] tool to hang up the call. "
    "Write it exactly as that."
)
TOOLS_NONE = "N/A"


@dataclass
class LLMResponse:
    """Response from LLM."""
    text: str
    total_ms: float = 0.0


async def validate_model(
    http: httpx.AsyncClient,
    api_key: str,
    model_name: str,
    base_url: str = "https://api.openai.com/v1",
) -> bool:
    """
    Validate that the configured chat model exists.

    Calls GET {base_url}/models to check.

    Raises:
        ConfigError: If the model doesn't exist or the API can't be reached
    """
    logger.info("Validating LLM model", model=model_name)

    try:
        response = await http.get(
            f"{base_url.rstrip('/')}/models",
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=10.0,
        )
    except httpx.RequestError as e:
        logger.error("Failed to connect to LLM API", error=str(e))
        raise ConfigError(
            f"Failed to connect to LLM API: {e}\n"
            "Check your network connection and OPENAI_API_KEY."
        ) from e

    if response.status_code != 200:
        logger.error(
            "Failed to fetch LLM models",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise ConfigError(
            f"Failed to validate LLM model. API returned status {response.status_code}. "
            "Check your OPENAI_API_KEY."
        )

    model_ids = [m.get("id") for m in response.json().get("data", [])]
    if model_name not in model_ids:
        available = ", ".join(sorted(str(m) for m in model_ids)[:10])
        logger.error(
            "LLM model not found",
            requested_model=model_name,
            available_models=available,
        )
        raise ConfigError(
            f"LLM_MODEL '{model_name}' not found in available models.\n"
            f"Available models include: {available}\n"
            "Please update LLM_MODEL in your .env file."
        )

    logger.info("LLM model validated successfully", model=model_name)
    return True


class ChatLLM:
    """Chat completion client. The caller owns the dialogue history."""

    def __init__(self, client: Optional[AsyncOpenAI], model: str):
        if client is None:
            raise ConfigError("OPENAI_API_KEY is required to generate responses")
        self._client = client
        self.model = model

    async def complete(self, messages: List[Dict[str, str]]) -> LLMResponse:
        """Generate one complete response for `messages`."""
        start_time = time.time()
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
        )
        text = response.choices[0].message.content or ""
        total_ms = (time.time() - start_time) * 1000

        logger.info(
            "LLM response generated",
            model=self.model,
            chars=len(text),
            total_ms=round(total_ms, 2),
        )
        return LLMResponse(text=text, total_ms=total_ms)
