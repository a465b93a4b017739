"""
Pytest configuration and fixtures.
"""

import base64
import json
import os
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock, patch

import numpy as np
import pytest


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "OPENAI_API_KEY": "test_openai_key",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "ELEVEN_LABS_API_KEY": "test_elevenlabs_key",
        "LLM_MODEL": "gpt-3.5-turbo",
        "STARTUP_DELAY_MS": "0",
        "BARGE_IN_DELAY_MS": "1000",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.voicecall.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class FakeTransport:
    """In-memory stand-in for a WebSocket."""

    def __init__(self):
        self.sent: List[object] = []
        self.closed = False
        self.close_code: Optional[int] = None

    async def send_text(self, data: str) -> None:
        if self.closed:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    async def send_bytes(self, data: bytes) -> None:
        if self.closed:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self.close_code = code

    @property
    def texts(self) -> List[str]:
        return [m for m in self.sent if isinstance(m, str)]

    @property
    def binaries(self) -> List[bytes]:
        return [m for m in self.sent if isinstance(m, bytes)]


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def providers():
    """Providers with mocked clients; nothing touches the network."""
    from src.voicecall.config import get_config
    from src.voicecall.providers import Providers

    return Providers(
        config=get_config(),
        openai=MagicMock(),
        http=MagicMock(),
        twilio=MagicMock(),
    )


@pytest.fixture
def fake_stt():
    stt = MagicMock()
    stt.transcribe = AsyncMock(return_value="hello there")
    stt.close = AsyncMock()
    return stt


@pytest.fixture
def fake_transcriber():
    """Live transcriber double for telephony calls."""
    transcriber = MagicMock()
    transcriber.is_connected = True
    transcriber.connect = AsyncMock(return_value=True)
    transcriber.send_audio = AsyncMock()
    transcriber.finish = AsyncMock()
    return transcriber


@pytest.fixture
def float_frame():
    """One browser microphone frame (1024 float32 samples)."""
    def _make(value: float = 0.1) -> bytes:
        return np.full(1024, value, dtype="<f4").tobytes()
    return _make


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {},
        }
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": "12345",
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
    })
