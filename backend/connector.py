"""
Backend Connector — adapter for the service that produces agent thoughts
and the Governor's response for each user turn.

The connector is configured via settings.yaml (``backend``) and provides
the ResponseGenerator contract to the TurnController. The language model,
persona weighting and routing all live behind this boundary.
"""
from __future__ import annotations

import asyncio
import itertools
import uuid
from typing import Any, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import BackendConfig, get_settings
from models.schemas import AgentThought, SpeakerRole, TurnResponse
from voice.base import ResponseGenerationError, ResponseGenerator

logger = structlog.get_logger()


def parse_turn_response(raw: dict[str, Any]) -> TurnResponse:
    """
    Convert a backend payload into a TurnResponse.

    Expected shape:
        {"responses": [{"agent": "logic", "content": "..."}],
         "governor_response": "..."}
    Entries for unknown agents are dropped.
    """
    thoughts = []
    for item in raw.get("responses") or []:
        agent = str(item.get("agent", "")).lower()
        content = (item.get("content") or "").strip()
        try:
            speaker = SpeakerRole(agent)
        except ValueError:
            logger.warning("backend_unknown_agent_dropped", agent=agent)
            continue
        if speaker == SpeakerRole.GOVERNOR or not content:
            continue
        thoughts.append(AgentThought(speaker=speaker, text=content))

    return TurnResponse(
        thoughts=thoughts,
        final_response=(raw.get("governor_response") or raw.get("final_response") or "").strip(),
    )


class RESTResponseGenerator(ResponseGenerator):
    """
    REST API response generator.
    Calls configured endpoints to open conversations and produce turns.
    """

    def __init__(self, config: BackendConfig = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or get_settings().backend
        self.client: Optional[httpx.AsyncClient] = None
        self._transport = transport

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_type == "bearer":
                token = self.config.auth_credentials.get("token", "")
                headers["Authorization"] = f"Bearer {token}"
            elif self.config.auth_type == "api_key":
                key_name = self.config.auth_credentials.get("header_name", "X-API-Key")
                headers[key_name] = self.config.auth_credentials.get("api_key", "")

            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_s,
                transport=self._transport,
            )
        return self.client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _request(self, method: str, endpoint: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        url = self.config.endpoints.get(endpoint, endpoint)
        # Replace path parameters
        for k, v in kwargs.pop("path_params", {}).items():
            url = url.replace(f"{{{k}}}", str(v))

        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
        return response.json() if response.content else {}

    async def create_session(self) -> str:
        try:
            result = await self._request("POST", "create_session", json={})
        except (httpx.HTTPError, ValueError) as e:
            logger.error("backend_create_session_failed", error=str(e))
            raise ResponseGenerationError(f"Could not create conversation: {e}", retryable=True) from e
        session_id = result.get("session_id") or result.get("id")
        if not session_id:
            raise ResponseGenerationError("Backend returned no session id")
        return str(session_id)

    async def get_opener(self, session_id: str) -> Optional[str]:
        try:
            result = await self._request(
                "GET", "opener",
                path_params={"session_id": session_id},
            )
        except (httpx.HTTPError, ValueError) as e:
            # No greeting is not fatal; the user simply speaks first
            logger.warning("backend_opener_failed", session_id=session_id, error=str(e))
            return None
        return (result.get("opener") or result.get("content") or "").strip() or None

    async def generate_turn_response(self, session_id: str, user_text: str) -> TurnResponse:
        try:
            result = await self._request(
                "POST", "turn",
                path_params={"session_id": session_id},
                json={"content": user_text},
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.error("backend_turn_failed", session_id=session_id, error=str(e))
            raise ResponseGenerationError(f"Turn generation failed: {e}", retryable=True) from e
        return parse_turn_response(result)

    async def close(self):
        if self.client:
            await self.client.aclose()


class MockResponseGenerator(ResponseGenerator):
    """
    Mock generator for development and testing.
    Cycles through canned agent thoughts with a short simulated latency.
    """

    OPENER = "The council is assembled. Speak your mind, and say submit when you are done."

    def __init__(self, latency_s: float = 0.4, opener: Optional[str] = OPENER):
        self.latency_s = latency_s
        self.opener = opener
        self.turns: list[tuple[str, str]] = []
        self._thoughts = itertools.cycle([
            [
                AgentThought(speaker=SpeakerRole.INSTINCT, text="Gut says there's more to this."),
                AgentThought(speaker=SpeakerRole.LOGIC, text="Three facts stated, one assumption hidden."),
            ],
            [
                AgentThought(speaker=SpeakerRole.PSYCHE, text="Listen to what sits under the words."),
            ],
            [
                AgentThought(speaker=SpeakerRole.LOGIC, text="The pattern repeats. Note it."),
                AgentThought(speaker=SpeakerRole.INSTINCT, text="Move. Don't overthink it."),
                AgentThought(speaker=SpeakerRole.PSYCHE, text="Something here still hurts."),
            ],
        ])

    async def create_session(self) -> str:
        return f"mock_{uuid.uuid4().hex[:8]}"

    async def get_opener(self, session_id: str) -> Optional[str]:
        return self.opener

    async def generate_turn_response(self, session_id: str, user_text: str) -> TurnResponse:
        logger.info("mock_backend_turn", session_id=session_id, chars=len(user_text))
        self.turns.append((session_id, user_text))
        await asyncio.sleep(self.latency_s)
        return TurnResponse(
            thoughts=next(self._thoughts),
            final_response=f"You said: {user_text}. The council has weighed it.",
        )


def create_response_generator(config: BackendConfig = None) -> ResponseGenerator:
    """Factory function to create the appropriate response generator."""
    config = config or get_settings().backend
    if config.type == "rest" and config.base_url:
        return RESTResponseGenerator(config)
    logger.warning("using_mock_backend", reason="no backend configured or base_url empty")
    return MockResponseGenerator()
