"""Tests for the live voice session controller."""

import asyncio

import numpy as np
import pytest
from google.genai import types

from estimator.audio import float_to_pcm16
from estimator.errors import PermissionDenied, StreamingSessionError
from estimator.models import BusinessProfile, RecommendedService
from estimator.voice import (
    SessionState,
    VoiceSessionController,
    build_system_instruction,
    start_voice_session,
    stop_voice_session,
)
from tests.helpers import FakeLive, FakeLiveSession, FakeMicrophone, FakeSpeaker, wait_until


@pytest.fixture
def profile():
    return BusinessProfile(
        name="Apex Roofing",
        pricing_rules="$450-$550 per square, $6000 minimum",
        custom_agent_instruction="Always ask for the zip code.",
        curated_recommendations=[
            RecommendedService(id="gutter", label="Gutter Guards", suggested_price="$900", is_approved=True),
            RecommendedService(id="skylight", label="Skylight Install", is_approved=False),
        ],
    )


@pytest.fixture
def live(fake_client):
    fake_client.aio.live = FakeLive(FakeLiveSession())
    return fake_client.aio.live


def speech(seconds: float = 0.01) -> bytes:
    return float_to_pcm16(np.full(int(seconds * 24000), 0.1, dtype=np.float32))


class TestSystemInstruction:
    def test_includes_rules_language_and_approved_upsells(self, profile):
        instruction = build_system_instruction(profile, "es")

        assert instruction.startswith("You are a friendly AI Agent for Apex Roofing.")
        assert "Rules: $450-$550 per square, $6000 minimum." in instruction
        assert "Language: es." in instruction
        assert "Always ask for the zip code." in instruction
        assert "Gutter Guards ($900)" in instruction
        assert "Skylight" not in instruction


class TestVoiceSession:
    @pytest.mark.asyncio
    async def test_permission_denied(self, fake_client, live, profile):
        mic = FakeMicrophone(granted=False)
        controller = VoiceSessionController(fake_client, profile, mic, FakeSpeaker())

        with pytest.raises(PermissionDenied):
            await controller.start()

        assert controller.state is SessionState.CLOSED
        assert live.connects == []
        assert not mic.frames_requested

    @pytest.mark.asyncio
    async def test_connect_config(self, fake_client, live, profile):
        session = await start_voice_session(
            fake_client, profile, "es", FakeMicrophone(), FakeSpeaker(), model="live-model"
        )

        model, config = live.connects[0]
        assert model == "live-model"
        assert config.response_modalities == ["AUDIO"]
        assert config.speech_config.voice_config.prebuilt_voice_config.voice_name == "Kore"
        assert "Language: es." in config.system_instruction.parts[0].text

        await stop_voice_session(session)

    @pytest.mark.asyncio
    async def test_streams_microphone_audio(self, fake_client, live, profile):
        mic = FakeMicrophone()
        controller = await start_voice_session(fake_client, profile, "en", mic, FakeSpeaker())
        assert controller.state is SessionState.ACTIVE

        mic.push(np.zeros(4096, dtype=np.float32))
        await wait_until(lambda: live.session.sent)

        blob = live.session.sent[0]
        assert isinstance(blob, types.Blob)
        assert blob.mime_type == "audio/pcm;rate=16000"
        assert len(blob.data) == 8192

        await controller.stop()

    @pytest.mark.asyncio
    async def test_plays_inbound_speech(self, fake_client, live, profile):
        speaker = FakeSpeaker()
        events = []
        controller = await start_voice_session(
            fake_client, profile, "en", FakeMicrophone(), speaker, on_speaking=events.append
        )

        live.session.push_audio(speech())
        live.session.push_audio(speech())
        await wait_until(lambda: len(speaker.played) == 2)

        first, second = speaker.played
        assert second.timestamp == pytest.approx(first.timestamp + first.duration)
        assert events[0] is True

        await controller.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, fake_client, live, profile):
        mic = FakeMicrophone()
        speaker = FakeSpeaker()
        controller = await start_voice_session(fake_client, profile, "en", mic, speaker)

        await controller.stop()
        await controller.stop()

        assert controller.state is SessionState.CLOSED
        assert speaker.clears == 1
        assert mic.closed
        assert live.exited
        assert not controller.capture.running
        await asyncio.wait_for(controller.wait_closed(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_stop_mid_playback_plays_nothing_after_clear(self, fake_client, live, profile):
        class SlowSpeaker(FakeSpeaker):
            def __init__(self):
                super().__init__()
                self.log = []
                self.playing = asyncio.Event()

            async def play(self, frame) -> None:
                self.log.append("play")
                self.playing.set()
                await asyncio.sleep(0.02)
                self.played.append(frame)

            async def clear(self) -> None:
                self.log.append("clear")
                await asyncio.sleep(0.05)
                self.clears += 1

        speaker = SlowSpeaker()
        controller = await start_voice_session(fake_client, profile, "en", FakeMicrophone(), speaker)

        live.session.push_audio(speech(), speech())
        await asyncio.wait_for(speaker.playing.wait(), timeout=1.0)
        await controller.stop()
        await asyncio.sleep(0.1)

        assert speaker.log == ["play", "clear"]
        assert not controller.is_speaking
        assert controller.playback.in_flight == 0

    @pytest.mark.asyncio
    async def test_remote_drop_closes_session(self, fake_client, live, profile):
        mic = FakeMicrophone()
        controller = await start_voice_session(fake_client, profile, "en", mic, FakeSpeaker())

        live.session.drop()
        await asyncio.wait_for(controller.wait_closed(), timeout=1.0)

        assert controller.state is SessionState.CLOSED
        assert isinstance(controller.error, StreamingSessionError)
        assert mic.closed
        assert live.exited

    @pytest.mark.asyncio
    async def test_empty_receive_means_server_closed(self, fake_client, live, profile):
        controller = await start_voice_session(fake_client, profile, "en", FakeMicrophone(), FakeSpeaker())

        live.session.end_turn()
        await asyncio.wait_for(controller.wait_closed(), timeout=1.0)

        assert isinstance(controller.error, StreamingSessionError)

    @pytest.mark.asyncio
    async def test_connect_failure(self, fake_client, profile):
        fake_client.aio.live = FakeLive(error=ConnectionRefusedError("handshake failed"))
        mic = FakeMicrophone()
        controller = VoiceSessionController(fake_client, profile, mic, FakeSpeaker())

        with pytest.raises(StreamingSessionError):
            await controller.start()

        assert controller.state is SessionState.CLOSED
        assert mic.closed
        assert not mic.frames_requested

    @pytest.mark.asyncio
    async def test_greeting_sent_on_connect(self, fake_client, live, profile):
        controller = await start_voice_session(
            fake_client, profile, "en", FakeMicrophone(), FakeSpeaker(), greeting="Say hello to the visitor."
        )

        assert live.session.turns[0].parts[0].text == "Say hello to the visitor."

        await controller.stop()

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self, fake_client, live, profile):
        controller = await start_voice_session(fake_client, profile, "en", FakeMicrophone(), FakeSpeaker())

        with pytest.raises(RuntimeError):
            await controller.start()

        await controller.stop()
