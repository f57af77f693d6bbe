"""
Tests for the ElevenLabs adapters: TTS streaming, realtime-scribe token
exchange, and recognizer message parsing.
"""
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from config.settings import ElevenLabsConfig
from voice.base import SynthesisError, TranscriptionAuthError, TranscriptionError
from voice.providers import (
    ElevenLabsSpeechSynthesizer,
    ScribeRealtimeClient,
    fetch_scribe_token,
    parse_scribe_message,
)


BASE_URL = "https://api.elevenlabs.test"


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))


class TestSynthesizer:

    @pytest.mark.asyncio
    async def test_streams_audio(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, content=b"\x01\x02\x03\x04")

        config = ElevenLabsConfig(api_key="sk", base_url=BASE_URL)
        synth = ElevenLabsSpeechSynthesizer(config, client=mock_client(handler))
        audio = await synth.synthesize("voice-1", "Hello")
        await synth.close()

        assert audio == b"\x01\x02\x03\x04"
        request = seen[0]
        assert request.url.path == "/v1/text-to-speech/voice-1/stream"
        assert request.url.params["output_format"] == "pcm_16000"
        body = json.loads(request.content)
        assert body["text"] == "Hello"
        assert body["model_id"] == "eleven_turbo_v2_5"

    @pytest.mark.asyncio
    async def test_http_error_carries_status(self):
        config = ElevenLabsConfig(api_key="sk", base_url=BASE_URL)
        synth = ElevenLabsSpeechSynthesizer(
            config, client=mock_client(lambda r: httpx.Response(429, json={"detail": "slow down"})),
        )
        with pytest.raises(SynthesisError) as exc:
            await synth.synthesize("voice-1", "Hello")
        assert exc.value.status_code == 429
        await synth.close()

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        synth = ElevenLabsSpeechSynthesizer(ElevenLabsConfig(api_key=""))
        with pytest.raises(SynthesisError) as exc:
            await synth.synthesize("voice-1", "Hello")
        assert exc.value.status_code == 401

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        config = ElevenLabsConfig(api_key="sk", base_url=BASE_URL)
        synth = ElevenLabsSpeechSynthesizer(config, client=mock_client(handler))
        with pytest.raises(SynthesisError):
            await synth.synthesize("voice-1", "Hello")
        await synth.close()


class TestScribeToken:

    @pytest.mark.asyncio
    async def test_returns_token(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"token": "single-use"})

        client = mock_client(handler)
        assert await fetch_scribe_token("sk", BASE_URL, client) == "single-use"
        assert seen[0].url.path == "/v1/single-use-token/realtime_scribe"
        assert seen[0].headers["xi-api-key"] == "sk"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_missing_key_is_auth_error(self):
        with pytest.raises(TranscriptionAuthError):
            await fetch_scribe_token("")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_rejected_key_is_auth_error(self, status):
        client = mock_client(lambda r: httpx.Response(status))
        with pytest.raises(TranscriptionAuthError):
            await fetch_scribe_token("sk", BASE_URL, client)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_server_error_uses_detail(self):
        client = mock_client(lambda r: httpx.Response(500, json={"detail": "scribe offline"}))
        with pytest.raises(TranscriptionError, match="scribe offline"):
            await fetch_scribe_token("sk", BASE_URL, client)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_missing_token_in_body(self):
        client = mock_client(lambda r: httpx.Response(200, json={}))
        with pytest.raises(TranscriptionError, match="No token"):
            await fetch_scribe_token("sk", BASE_URL, client)
        await client.aclose()


class TestScribeMessages:

    def test_partial(self):
        segment = parse_scribe_message({"message_type": "partial_transcript", "text": "hel"})
        assert segment.text == "hel"
        assert not segment.is_final

    def test_committed_uses_first_word_start(self):
        segment = parse_scribe_message({
            "message_type": "committed_transcript_with_timestamps",
            "text": "hello world",
            "words": [{"text": "hello", "start": 0.42}, {"text": "world", "start": 0.9}],
        })
        assert segment.is_final
        assert segment.timestamp == 0.42

    def test_plain_commit_ignored_when_timestamps_requested(self):
        assert parse_scribe_message({"message_type": "committed_transcript", "text": "x"}) is None

    def test_plain_commit_without_timestamps(self):
        segment = parse_scribe_message(
            {"message_type": "committed_transcript", "text": "x"}, include_timestamps=False,
        )
        assert segment.is_final
        assert segment.timestamp is not None

    def test_control_messages_ignored(self):
        assert parse_scribe_message({"message_type": "session_started"}) is None

    def test_auth_error(self):
        with pytest.raises(TranscriptionAuthError):
            parse_scribe_message({"message_type": "auth_error", "error": "bad token"})

    def test_protocol_error(self):
        with pytest.raises(TranscriptionError, match="too fast"):
            parse_scribe_message({"message_type": "rate_limited", "message": "too fast"})


class TestScribeUrl:

    def test_query_parameters(self):
        client = ScribeRealtimeClient(audio_input=None, config=ElevenLabsConfig(sample_rate=16000))
        url = urlparse(client._build_url("tok"))
        query = parse_qs(url.query)
        assert url.netloc == "api.elevenlabs.io"
        assert query["token"] == ["tok"]
        assert query["audio_format"] == ["pcm_16000"]
        assert query["commit_strategy"] == ["vad"]
        assert query["include_timestamps"] == ["true"]

    @pytest.mark.asyncio
    async def test_events_before_connect(self):
        client = ScribeRealtimeClient(audio_input=None, config=ElevenLabsConfig())
        with pytest.raises(TranscriptionError):
            async for _ in client.events():
                pass
