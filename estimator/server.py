"""FastAPI server for the estimator widget.

Endpoints:
    GET  /          health check
    POST /scan      build a business profile from a website
    POST /estimate  estimate a visitor's job
    WS   /ws/voice  live voice agent; the browser is the microphone and speaker
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager

import numpy as np
import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from loguru import logger
from pydantic import ValidationError

from estimator.audio import AudioClock, AudioFrame, LoopClock, resample
from estimator.config import CAPTURE_SAMPLE_RATE, GEMINI_MODEL, SERVER_PORT, make_client
from estimator.errors import (
    EstimatorError,
    PermissionDenied,
    StreamingSessionError,
    UpstreamQuotaError,
)
from estimator.estimate import estimate
from estimator.models import BusinessProfile, EstimateTask, EstimationResult, WireModel
from estimator.scan import scan
from estimator.voice import VoiceSessionController, start_voice_session


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    if getattr(app.state, "client", None) is None:
        app.state.client = make_client()
    yield


app = FastAPI(
    title="AI Estimator Widget",
    description="Business scans, cost estimates and a live voice agent backed by Gemini",
    version="0.1.0",
    lifespan=lifespan,
)


class ScanRequest(WireModel):
    url: str
    custom_instruction: str = ""


class EstimateRequest(WireModel):
    task: EstimateTask
    profile: BusinessProfile


def failure(error: EstimatorError, action: str) -> HTTPException:
    """One human-readable notice per failed request."""
    where = f" ({error.stage})" if error.stage else ""
    status = 429 if isinstance(error, UpstreamQuotaError) else 502
    return HTTPException(status_code=status, detail=f"{action} failed{where}. Please try again.")


# =============================================================================
# HTTP
# =============================================================================


@app.get("/")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok", "service": "ai-estimator-widget", "model": GEMINI_MODEL}


@app.post("/scan")
async def scan_endpoint(body: ScanRequest, request: Request) -> dict:
    try:
        profile = await scan(request.app.state.client, body.url, body.custom_instruction)
    except EstimatorError as e:
        logger.error(f"Scan of {body.url} failed: {e}")
        raise failure(e, "Scan") from e
    return profile.to_wire()


@app.post("/estimate")
async def estimate_endpoint(body: EstimateRequest, request: Request) -> dict:
    try:
        result: EstimationResult = await estimate(request.app.state.client, body.task, body.profile)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except EstimatorError as e:
        logger.error(f"Estimate for {body.profile.name!r} failed: {e}")
        raise failure(e, "Estimation") from e
    return result.to_wire()


# =============================================================================
# Voice
# =============================================================================


class WebSocketMicrophone:
    """Microphone frames relayed by the widget as base64 float32 samples."""

    def __init__(self, websocket: WebSocket, granted: bool = True, sample_rate: int = CAPTURE_SAMPLE_RATE):
        self._websocket = websocket
        self._granted = granted
        self._sample_rate = sample_rate
        self._open = False

    async def open(self) -> None:
        if not self._granted:
            raise PermissionDenied("Microphone access is required for voice mode.")
        self._open = True

    async def frames(self) -> AsyncIterator[np.ndarray]:
        while self._open:
            try:
                message = await self._websocket.receive_json()
            except WebSocketDisconnect:
                logger.info("Widget disconnected")
                return

            event = message.get("event")
            if event == "media":
                payload = message.get("payload", "")
                if not payload:
                    continue
                try:
                    samples = np.frombuffer(base64.b64decode(payload), dtype="<f4")
                except (binascii.Error, ValueError) as e:
                    logger.warning(f"Dropping undecodable media frame: {e}")
                    continue
                yield resample(samples, self._sample_rate, CAPTURE_SAMPLE_RATE)
            elif event == "stop":
                logger.info("Received stop event from widget")
                return

    async def close(self) -> None:
        self._open = False


class WebSocketSpeaker:
    """Sends scheduled speech to the widget, which plays it on its AudioContext."""

    def __init__(self, websocket: WebSocket, clock: AudioClock | None = None):
        self._websocket = websocket
        self._clock = clock or LoopClock()
        self._pending: set[asyncio.Task] = set()

    async def play(self, frame: AudioFrame) -> None:
        await self._websocket.send_json(
            {
                "event": "playAudio",
                "startIn": max(0.0, frame.timestamp - self._clock.now()),
                "duration": frame.duration,
                "media": {
                    "contentType": "audio/f32le",
                    "sampleRate": frame.sample_rate,
                    "payload": base64.b64encode(frame.samples.astype("<f4").tobytes()).decode("utf-8"),
                },
            }
        )

    async def clear(self) -> None:
        try:
            await self._websocket.send_json({"event": "clearAudio"})
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug(f"Widget gone before clearAudio: {e}")

    def speaking_changed(self, speaking: bool) -> None:
        task = asyncio.create_task(self._send_event({"event": "speaking", "speaking": speaking}))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send_event(self, event: dict) -> None:
        try:
            await self._websocket.send_json(event)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug(f"Widget gone before {event['event']}: {e}")


async def reject(websocket: WebSocket, message: str) -> None:
    await websocket.send_json({"event": "error", "message": message})
    await websocket.send_json({"event": "state", "state": "CLOSED"})


@app.websocket("/ws/voice")
async def voice_endpoint(websocket: WebSocket) -> None:
    """Duplex audio between the widget and a Gemini Live voice agent."""
    await websocket.accept()
    logger.info("Voice WebSocket connection accepted")
    controller: VoiceSessionController | None = None

    try:
        start_message = await websocket.receive_json()
        if start_message.get("event") != "start":
            logger.error(f"Expected start event, got: {start_message.get('event')}")
            await reject(websocket, "Expected start event")
            return

        try:
            profile = BusinessProfile.model_validate(start_message.get("profile") or {})
        except ValidationError as e:
            await reject(websocket, f"Invalid profile: {e}")
            return

        try:
            sample_rate = int(start_message.get("sampleRate", CAPTURE_SAMPLE_RATE))
        except (TypeError, ValueError):
            sample_rate = 0
        if sample_rate <= 0:
            await reject(websocket, f"Invalid sampleRate: {start_message.get('sampleRate')!r}")
            return

        language = start_message.get("language") or profile.default_language
        source = WebSocketMicrophone(
            websocket,
            granted=bool(start_message.get("microphone", True)),
            sample_rate=sample_rate,
        )
        speaker = WebSocketSpeaker(websocket)

        try:
            controller = await start_voice_session(
                websocket.app.state.client,
                profile,
                language,
                source,
                speaker,
                on_speaking=speaker.speaking_changed,
                greeting=start_message.get("greeting"),
            )
        except (PermissionDenied, StreamingSessionError) as e:
            await reject(websocket, str(e))
            return

        await websocket.send_json({"event": "state", "state": controller.state.value})
        await controller.wait_closed()

        with contextlib.suppress(WebSocketDisconnect, RuntimeError):
            if controller.error:
                await websocket.send_json({"event": "error", "message": str(controller.error)})
            await websocket.send_json({"event": "state", "state": controller.state.value})

    except WebSocketDisconnect:
        logger.info("Voice WebSocket disconnected")
    finally:
        if controller:
            await controller.stop()
        with contextlib.suppress(Exception):
            await websocket.close()


def main() -> None:
    """Run the server."""
    logger.info(f"Starting AI Estimator Widget on port {SERVER_PORT}")
    uvicorn.run("estimator.server:app", host="0.0.0.0", port=SERVER_PORT, log_level="info")


if __name__ == "__main__":
    main()
