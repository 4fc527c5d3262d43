"""Live voice sessions with the Gemini native-audio model.

A session moves IDLE -> CONNECTING -> ACTIVE -> CLOSED. While ACTIVE, the
capture pipeline streams microphone audio to Gemini and a receive task feeds
Gemini's speech to the playback scheduler. Dropped sessions are not
reconnected; the visitor starts a new one.

Usage:
    session = await start_voice_session(client, profile, "en", source, sink)
    ...
    await stop_voice_session(session)
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

from google.genai import types
from loguru import logger

from estimator.audio import (
    AudioClock,
    AudioSink,
    AudioSource,
    CapturePipeline,
    EncodedFrame,
    PlaybackScheduler,
)
from estimator.config import GEMINI_LIVE_MODEL, GEMINI_VOICE
from estimator.errors import PermissionDenied, StreamingSessionError
from estimator.models import BusinessProfile

if TYPE_CHECKING:
    from google import genai


class SessionState(str, Enum):
    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


def build_system_instruction(profile: BusinessProfile, language: str) -> str:
    instruction = (
        f"You are a friendly AI Agent for {profile.name}. "
        f"Goal: Converse and estimate projects. Rules: {profile.pricing_rules}. "
        f"Language: {language}."
    )
    if profile.custom_agent_instruction:
        instruction += f"\n{profile.custom_agent_instruction}"

    upsells = profile.approved_upsells()
    if upsells:
        offers = ", ".join(f"{service.label} ({service.suggested_price})" for service in upsells)
        instruction += f"\nYou may offer these add-ons when relevant: {offers}."
    return instruction


class VoiceSessionController:
    """Owns one duplex audio session between a visitor and Gemini Live."""

    def __init__(
        self,
        client: genai.Client,
        profile: BusinessProfile,
        source: AudioSource,
        sink: AudioSink,
        language: str = "en",
        model: str = GEMINI_LIVE_MODEL,
        voice: str = GEMINI_VOICE,
        greeting: str | None = None,
        clock: AudioClock | None = None,
        on_speaking: Callable[[bool], Any] | None = None,
    ):
        self._client = client
        self.profile = profile
        self.language = language
        self._model = model
        self._voice = voice
        self._greeting = greeting
        self._source = source

        self._state = SessionState.IDLE
        self._session = None
        self._exit_stack = contextlib.AsyncExitStack()
        self._tasks: list[asyncio.Task] = []
        self._supervisor: asyncio.Task | None = None
        self._closed = asyncio.Event()
        self.error: Exception | None = None

        self.capture = CapturePipeline(source, self._send_frame, clock=clock)
        self.playback = PlaybackScheduler(sink, clock=clock, on_speaking=on_speaking)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_speaking(self) -> bool:
        return self.playback.is_speaking

    def _build_session_config(self) -> types.LiveConnectConfig:
        return types.LiveConnectConfig(
            response_modalities=["AUDIO"],
            speech_config=types.SpeechConfig(
                voice_config=types.VoiceConfig(
                    prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=self._voice)
                )
            ),
            system_instruction=types.Content(
                parts=[types.Part(text=build_system_instruction(self.profile, self.language))]
            ),
        )

    async def start(self) -> None:
        """Acquire the microphone, open the live session and start streaming.

        Raises:
            PermissionDenied: microphone refused; the session is CLOSED
            StreamingSessionError: Gemini Live could not be reached; CLOSED
        """
        if self._state is not SessionState.IDLE:
            raise RuntimeError(f"Voice session already {self._state.value}")

        self._state = SessionState.CONNECTING
        logger.info(f"Voice session connecting for {self.profile.name!r} ({self.language})")

        try:
            await self._source.open()
        except PermissionDenied:
            logger.warning("Microphone access denied; voice session closed")
            self._close_state()
            raise

        try:
            self._session = await self._exit_stack.enter_async_context(
                self._client.aio.live.connect(model=self._model, config=self._build_session_config())
            )
            if self._greeting:
                await self._session.send_client_content(
                    turns=types.Content(role="user", parts=[types.Part(text=self._greeting)]),
                    turn_complete=True,
                )
        except Exception as e:
            logger.error(f"Failed to open live session: {e}")
            self.error = StreamingSessionError(f"Could not open live session: {e}")
            await self._release()
            self._close_state()
            raise self.error from e

        if self._state is not SessionState.CONNECTING:
            await self._release()  # stopped while connecting
            return

        self.playback.reset()
        self._state = SessionState.ACTIVE
        logger.info("Connected to Gemini Live API")

        self._tasks = [
            asyncio.create_task(self.capture.run(), name="capture_tx"),
            asyncio.create_task(self._receive_from_gemini(), name="gemini_rx"),
        ]
        self._supervisor = asyncio.create_task(self._supervise(), name="voice_supervisor")

    async def stop(self) -> None:
        """Tear the session down. Safe to call repeatedly."""
        if self._state is SessionState.CLOSED:
            return
        was_active = self._state is SessionState.ACTIVE
        self._state = SessionState.CLOSED

        self.capture.stop()
        for task in self._tasks:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        # receive task is gone, so nothing is scheduled after the sink clears
        await self.playback.cancel()

        await self._release()
        self._closed.set()
        if self._supervisor and self._supervisor is not asyncio.current_task():
            self._supervisor.cancel()
        if was_active:
            logger.info(f"Voice session closed after {self.capture.frames_sent} frames sent")

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def _release(self) -> None:
        try:
            await self._source.close()
        finally:
            self._session = None
            try:
                await self._exit_stack.aclose()
            except Exception as e:
                logger.warning(f"Error closing live session: {e}")

    def _close_state(self) -> None:
        self._state = SessionState.CLOSED
        self._closed.set()

    async def _supervise(self) -> None:
        """Close the session as soon as either direction ends."""
        done, _ = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if not task.cancelled() and task.exception():
                logger.error(f"Task {task.get_name()} failed: {task.exception()}")
                if self.error is None:
                    self.error = StreamingSessionError(str(task.exception()))
        await self.stop()

    async def _send_frame(self, frame: EncodedFrame) -> None:
        if self._session is None:
            return
        await self._session.send_realtime_input(
            audio=types.Blob(data=frame.pcm, mime_type=frame.mime_type)
        )

    async def _receive_from_gemini(self) -> None:
        """Feed Gemini's audio to the playback scheduler in arrival order."""
        while self._state is SessionState.ACTIVE:
            received = 0
            async for response in self._session.receive():
                received += 1
                if self._state is not SessionState.ACTIVE:
                    return

                server_content = response.server_content
                if not server_content:
                    continue

                model_turn = server_content.model_turn
                if model_turn and model_turn.parts:
                    for part in model_turn.parts:
                        if part.inline_data and part.inline_data.data:
                            await self.playback.schedule(part.inline_data.data)

            if received == 0:
                raise StreamingSessionError("Live session closed by the server")


# =============================================================================
# Public API
# =============================================================================


async def start_voice_session(
    client: genai.Client,
    profile: BusinessProfile,
    language: str,
    source: AudioSource,
    sink: AudioSink,
    **options: Any,
) -> VoiceSessionController:
    """Open a voice session for ``profile``; see VoiceSessionController for options."""
    controller = VoiceSessionController(client, profile, source, sink, language=language, **options)
    await controller.start()
    return controller


async def stop_voice_session(handle: VoiceSessionController) -> None:
    await handle.stop()
