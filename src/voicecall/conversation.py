"""
Turn-taking engine for one call.

A Conversation owns the dialogue history and the call log, listens to its
Call's events and drives the listen / respond / interrupt cycle:

    INIT -> READY -> LISTENING <-> RESPONDING -> ENDED

Interrupts never cancel a response that is already being generated; the
response is recorded in history, but playback of the utterance in flight
stops at the next frame boundary.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from src.voicecall.calls.base import Call, CallClosedError, CallEventHandler
from src.voicecall.llm import END_CALL_TOOL
from src.voicecall.streaming import StreamingFrameWriter

if TYPE_CHECKING:
    from src.voicecall.assistant import Assistant

logger = structlog.get_logger(__name__)

HUNG_UP_LINE = "---- Assistant Hung Up ----"
INTERRUPTED_MARKER = "[interrupted]"


class ConversationState(str, Enum):
    INIT = "init"
    READY = "ready"
    LISTENING = "listening"
    RESPONDING = "responding"
    ENDED = "ended"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class CallLogEntry:
    """One call log event."""
    event: str
    meta: Optional[Dict[str, Any]] = None
    timestamp: str = field(default_factory=_utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp, "event": self.event, "meta": self.meta}


OnEnd = Callable[[Tuple[CallLogEntry, ...]], Optional[Awaitable[None]]]


class Conversation(CallEventHandler):
    """Conversation between one caller and one assistant."""

    def __init__(
        self,
        assistant: "Assistant",
        call: Call,
        *,
        on_end: Optional[OnEnd] = None,
    ):
        self.assistant = assistant
        self.call = call
        self.history: List[Dict[str, str]] = assistant.prompt
        self.state = ConversationState.INIT

        self._call_log: List[CallLogEntry] = []
        self._on_end = on_end
        self._writer = StreamingFrameWriter(call)
        self._turn_lock = asyncio.Lock()
        self._playback_generation = 0
        self._begin_task: Optional[asyncio.Task] = None
        self._end_delivered = False

        self._add_to_call_log("INIT", {"assistant": assistant.describe()})
        call.attach(self)

    @property
    def call_log(self) -> Tuple[CallLogEntry, ...]:
        return tuple(self._call_log)

    @property
    def is_ended(self) -> bool:
        return self.state == ConversationState.ENDED

    def begin(self, delay_ms: int = 0) -> asyncio.Task:
        """Start listening after `delay_ms`; speaks first if configured."""
        self._begin_task = asyncio.create_task(self._begin(delay_ms))
        return self._begin_task

    async def _begin(self, delay_ms: int) -> None:
        try:
            if delay_ms > 0:
                await asyncio.sleep(delay_ms / 1000.0)
            if self.is_ended:
                return

            async with self._turn_lock:
                self.state = ConversationState.READY
                self._add_to_call_log("READY")
                await self.call.indicate_ready()

                if self.assistant.speak_first:
                    await self._speak_first()

                if not self.is_ended:
                    self.state = ConversationState.LISTENING
        except asyncio.CancelledError:
            pass
        except Exception as e:
            self._record_turn_failure("opening", e)

    async def _speak_first(self) -> None:
        first_message = self.assistant.opening_message
        if not first_message:
            response = await self.assistant.create_response(self.history)
            first_message = response.content
        if not first_message or self.is_ended:
            return
        await self._note_what_was_said("assistant", first_message)
        await self._speak(first_message)

    # ---- call events ----------------------------------------------------

    async def on_user_message(self, text: str) -> None:
        if self.is_ended:
            logger.debug("User message after call end ignored")
            return
        if self.state == ConversationState.INIT:
            logger.warning("User message before ready ignored", text=text[:80])
            return

        async with self._turn_lock:
            if self.is_ended:
                return
            await self._note_what_was_said("user", text)
            self.state = ConversationState.RESPONDING
            try:
                await self._respond()
            except Exception as e:
                self._record_turn_failure("response", e)
            finally:
                if not self.is_ended:
                    self.state = ConversationState.LISTENING

    async def _respond(self) -> None:
        response = await self.assistant.create_response(self.history)
        if self.is_ended:
            logger.debug("Response discarded, call ended while generating")
            return

        if response.content:
            await self._note_what_was_said("assistant", response.content)
            await self._speak(response.content)

        tool = response.selected_tool
        if not tool:
            return

        self._add_to_call_log("TOOL_SELECTED", {"tool": tool})
        if tool == END_CALL_TOOL:
            await self._hang_up()
        else:
            logger.warning("Unhandled tool", tool=tool)

    async def on_interrupt(self) -> None:
        if self.is_ended:
            return

        self._playback_generation += 1
        self._add_to_call_log("INTERRUPT", {"state": self.state.value})
        await self._note_what_was_said("user", INTERRUPTED_MARKER)
        logger.info("Caller interrupted", state=self.state.value)

    async def on_call_ended(self) -> None:
        if self._end_delivered:
            return
        self.state = ConversationState.ENDED
        self._playback_generation += 1

        task = self._begin_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

        self._add_to_call_log("CALL_ENDED")
        self._end_delivered = True
        logger.info("Conversation ended", turns=len(self.history) - 2, events=len(self._call_log))

        if self._on_end is None:
            return
        try:
            result = self._on_end(self.call_log)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("on_end callback failed", error=str(e), error_type=type(e).__name__)

    # ---- helpers ----------------------------------------------------------

    async def _hang_up(self) -> None:
        self.state = ConversationState.ENDED
        try:
            await self.call.push_meta(HUNG_UP_LINE)
        except CallClosedError:
            logger.debug("Hang-up line not delivered, call closed")
        await self.call.end()
        self.call.detach()

    async def _speak(self, text: str) -> int:
        generation = self._playback_generation

        def should_continue() -> bool:
            return generation == self._playback_generation and not self.call.is_closed

        source = self.assistant.stream_speech(text, self.call.audio_spec)
        try:
            return await self._writer.write(source, should_continue=should_continue)
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _note_what_was_said(self, speaker: str, message: str) -> None:
        self._add_to_call_log("TRANSCRIPT", {"speaker": speaker, "message": message})
        self.history.append({"role": speaker, "content": message})
        try:
            await self.call.push_meta(f"{speaker}: {message}")
        except CallClosedError:
            logger.debug("Meta line not delivered, call closed", speaker=speaker)

    def _add_to_call_log(self, event: str, meta: Optional[Dict[str, Any]] = None) -> None:
        if self._end_delivered:
            logger.debug("Call log closed, event dropped", event=event)
            return
        self._call_log.append(CallLogEntry(event=event, meta=meta))

    def _record_turn_failure(self, stage: str, error: Exception) -> None:
        if self.is_ended:
            logger.debug("Turn failed after call end", stage=stage, error=str(error))
            return
        logger.error(
            "Conversation turn failed",
            stage=stage,
            error=str(error),
            error_type=type(error).__name__,
        )
        self._add_to_call_log(
            "TURN_FAILED",
            {"stage": stage, "error": str(error), "error_type": type(error).__name__},
        )
        self.state = ConversationState.LISTENING
