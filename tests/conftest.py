"""Shared test fixtures for Chorus."""
import pytest

from config.settings import TurnConfig, VoicesConfig
from models.schemas import Track
from fakes import (
    FakeAudioOutput,
    FakeResponseGenerator,
    FakeSynthesizer,
    FakeTrackPlayer,
    FakeTranscriptionClient,
)


@pytest.fixture
def synthesizer() -> FakeSynthesizer:
    return FakeSynthesizer()


@pytest.fixture
def output() -> FakeAudioOutput:
    return FakeAudioOutput(delay=0.01)


@pytest.fixture
def track_player() -> FakeTrackPlayer:
    return FakeTrackPlayer()


@pytest.fixture
def stt_client() -> FakeTranscriptionClient:
    return FakeTranscriptionClient()


@pytest.fixture
def generator() -> FakeResponseGenerator:
    return FakeResponseGenerator()


@pytest.fixture
def credentials():
    async def provider() -> str:
        return "single-use-token"
    return provider


@pytest.fixture
def voices() -> VoicesConfig:
    return VoicesConfig(thoughts="voice-thoughts", governor="voice-governor")


@pytest.fixture
def fast_turn_config() -> TurnConfig:
    """Real semantics, test-sized timings."""
    return TurnConfig(
        thought_timeout_s=1.0,
        response_timeout_s=1.0,
        turn_guard_grace_s=0.5,
        fallback_ms_per_char=1,
        thought_fallback_cap_ms=20,
        response_fallback_cap_ms=30,
        submit_debounce_ms=20,
    )


@pytest.fixture
def tracks() -> list[Track]:
    return [
        Track(id="t1", name="Rain", source="rain.wav"),
        Track(id="t2", name="Drone", source="drone.wav"),
        Track(id="t3", name="Hum", source="hum.wav"),
    ]
