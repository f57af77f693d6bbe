"""
Tests for the backend connector — payload parsing, REST calls via an
in-memory httpx transport, and the mock generator.
"""
import json

import httpx
import pytest

from backend.connector import (
    MockResponseGenerator,
    RESTResponseGenerator,
    create_response_generator,
    parse_turn_response,
)
from config.settings import BackendConfig
from models.schemas import SpeakerRole
from voice.base import ResponseGenerationError


def rest_config(**overrides):
    options = dict(
        type="rest",
        base_url="http://agents.test",
        auth_type="bearer",
        auth_credentials={"token": "secret"},
    )
    options.update(overrides)
    return BackendConfig(**options)


class TestParseTurnResponse:

    def test_thoughts_and_governor(self):
        response = parse_turn_response({
            "responses": [
                {"agent": "instinct", "content": "Run."},
                {"agent": "LOGIC", "content": " Wait. "},
            ],
            "governor_response": "Walk briskly.",
        })
        assert [(t.speaker, t.text) for t in response.thoughts] == [
            (SpeakerRole.INSTINCT, "Run."), (SpeakerRole.LOGIC, "Wait."),
        ]
        assert response.final_response == "Walk briskly."

    def test_unknown_and_empty_entries_dropped(self):
        response = parse_turn_response({
            "responses": [
                {"agent": "narrator", "content": "Once upon a time"},
                {"agent": "psyche", "content": ""},
                {"agent": "governor", "content": "duplicate"},
            ],
            "final_response": "Done.",
        })
        assert response.thoughts == []
        assert response.final_response == "Done."

    def test_empty_payload(self):
        response = parse_turn_response({})
        assert response.thoughts == []
        assert response.final_response == ""


class TestRESTResponseGenerator:

    @pytest.mark.asyncio
    async def test_full_round_trip(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.url.path == "/conversations":
                return httpx.Response(200, json={"session_id": "abc"})
            if request.url.path == "/conversations/abc/opener":
                return httpx.Response(200, json={"opener": "Hello there."})
            if request.url.path == "/conversations/abc/turns":
                return httpx.Response(200, json={
                    "responses": [{"agent": "logic", "content": "Think."}],
                    "governor_response": "Decided.",
                })
            return httpx.Response(404)

        gen = RESTResponseGenerator(rest_config(), transport=httpx.MockTransport(handler))
        session_id = await gen.create_session()
        opener = await gen.get_opener(session_id)
        response = await gen.generate_turn_response(session_id, "what now")
        await gen.close()

        assert session_id == "abc"
        assert opener == "Hello there."
        assert response.final_response == "Decided."
        assert json.loads(seen[2].content) == {"content": "what now"}
        assert all(r.headers["Authorization"] == "Bearer secret" for r in seen)

    @pytest.mark.asyncio
    async def test_api_key_auth_header(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"id": 42})

        config = rest_config(auth_type="api_key",
                             auth_credentials={"header_name": "X-Key", "api_key": "k1"})
        gen = RESTResponseGenerator(config, transport=httpx.MockTransport(handler))
        assert await gen.create_session() == "42"
        assert seen[0].headers["X-Key"] == "k1"
        await gen.close()

    @pytest.mark.asyncio
    async def test_turn_http_error_is_response_generation_error(self):
        gen = RESTResponseGenerator(
            rest_config(), transport=httpx.MockTransport(lambda r: httpx.Response(500)),
        )
        with pytest.raises(ResponseGenerationError) as exc:
            await gen.generate_turn_response("abc", "hi")
        assert exc.value.retryable
        await gen.close()

    @pytest.mark.asyncio
    async def test_missing_session_id(self):
        gen = RESTResponseGenerator(
            rest_config(), transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})),
        )
        with pytest.raises(ResponseGenerationError):
            await gen.create_session()
        await gen.close()

    @pytest.mark.asyncio
    async def test_opener_failure_is_not_fatal(self):
        gen = RESTResponseGenerator(
            rest_config(), transport=httpx.MockTransport(lambda r: httpx.Response(503)),
        )
        assert await gen.get_opener("abc") is None
        await gen.close()


class TestMockAndFactory:

    @pytest.mark.asyncio
    async def test_mock_cycles_canned_thoughts(self):
        gen = MockResponseGenerator(latency_s=0)
        session_id = await gen.create_session()
        first = await gen.generate_turn_response(session_id, "one")
        second = await gen.generate_turn_response(session_id, "two")
        assert len(first.thoughts) == 2
        assert len(second.thoughts) == 1
        assert "two" in second.final_response
        assert gen.turns == [(session_id, "one"), (session_id, "two")]

    def test_factory_prefers_rest_when_configured(self):
        assert isinstance(create_response_generator(rest_config()), RESTResponseGenerator)

    def test_factory_falls_back_to_mock(self):
        assert isinstance(create_response_generator(BackendConfig(type="rest")), MockResponseGenerator)
        assert isinstance(create_response_generator(BackendConfig(type="mock")), MockResponseGenerator)
