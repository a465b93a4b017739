"""
Process-wide provider clients.

API clients are constructed once at startup and handed to every call, STT and
TTS object that needs them. Nothing here is created at import time.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog
from openai import AsyncOpenAI

from src.voicecall.config import Config

logger = structlog.get_logger(__name__)

HTTP_TIMEOUT = httpx.Timeout(30.0, connect=10.0)


@dataclass
class Providers:
    """Shared clients for a single server process."""

    config: Config
    openai: Optional[AsyncOpenAI] = None
    http: Optional[httpx.AsyncClient] = None
    twilio: Optional[Any] = None

    async def aclose(self) -> None:
        if self.http is not None:
            await self.http.aclose()
            self.http = None
        if self.openai is not None:
            await self.openai.close()
            self.openai = None
        logger.info("Provider clients closed")


def create_providers(config: Config) -> Providers:
    """
    Build the shared clients for `config`.

    The OpenAI client is only created when a key is configured; the Twilio REST
    client only when account credentials are present (used to complete calls).
    """
    openai_client = None
    if config.openai_api_key:
        openai_client = AsyncOpenAI(
            api_key=config.openai_api_key,
            base_url=config.openai_base_url,
        )

    twilio_client = None
    if config.twilio_account_sid and config.twilio_auth_token:
        from twilio.rest import Client as TwilioClient

        twilio_client = TwilioClient(config.twilio_account_sid, config.twilio_auth_token)

    providers = Providers(
        config=config,
        openai=openai_client,
        http=httpx.AsyncClient(timeout=HTTP_TIMEOUT),
        twilio=twilio_client,
    )
    logger.info(
        "Provider clients ready",
        openai=openai_client is not None,
        twilio=twilio_client is not None,
    )
    return providers
