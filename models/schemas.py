"""
Core data models for the Chorus voice orchestrator.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class SpeakerRole(str, Enum):
    """Every voice that can hold the foreground audio channel."""
    INSTINCT = "instinct"
    LOGIC = "logic"
    PSYCHE = "psyche"
    GOVERNOR = "governor"

    @property
    def is_agent(self) -> bool:
        return self is not SpeakerRole.GOVERNOR


class TurnOwner(str, Enum):
    AI = "ai"
    USER = "user"


class TurnState(str, Enum):
    IDLE = "idle"                                  # session not started yet
    AI_THINKING = "ai_thinking"
    AI_SPEAKING_THOUGHTS = "ai_speaking_thoughts"
    AI_SPEAKING_RESPONSE = "ai_speaking_response"
    USER_LISTENING = "user_listening"
    ENDED = "ended"                                # terminal, teardown only

    @property
    def owner(self) -> Optional[TurnOwner]:
        return _STATE_OWNERS[self]


_STATE_OWNERS: dict[TurnState, Optional[TurnOwner]] = {
    TurnState.IDLE: None,
    TurnState.AI_THINKING: TurnOwner.AI,
    TurnState.AI_SPEAKING_THOUGHTS: TurnOwner.AI,
    TurnState.AI_SPEAKING_RESPONSE: TurnOwner.AI,
    TurnState.USER_LISTENING: TurnOwner.USER,
    TurnState.ENDED: None,
}


class DialogEntryType(str, Enum):
    THOUGHT = "thought"
    RESPONSE = "response"
    USER = "user"


# ──────────────────────────────────────────────────────────────
#  Speaker profiles — display name + colour per role
# ──────────────────────────────────────────────────────────────

class SpeakerProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: SpeakerRole
    name: str
    color: str
    description: str = ""


SPEAKER_PROFILES: dict[SpeakerRole, SpeakerProfile] = {
    SpeakerRole.INSTINCT: SpeakerProfile(
        role=SpeakerRole.INSTINCT, name="Snap", color="#F59E0B",
        description="Raw impulse, unfiltered instinct",
    ),
    SpeakerRole.LOGIC: SpeakerProfile(
        role=SpeakerRole.LOGIC, name="Dot", color="#22D3EE",
        description="Cold analysis, pattern recognition",
    ),
    SpeakerRole.PSYCHE: SpeakerProfile(
        role=SpeakerRole.PSYCHE, name="Puff", color="#C084FC",
        description="Deep intuition, emotional truth",
    ),
    SpeakerRole.GOVERNOR: SpeakerProfile(
        role=SpeakerRole.GOVERNOR, name="Governor", color="#94A3B8",
        description="Concluding voice of every AI turn",
    ),
}


def speaker_profile(role: SpeakerRole) -> SpeakerProfile:
    return SPEAKER_PROFILES[role]


# ──────────────────────────────────────────────────────────────
#  Response generation contract
# ──────────────────────────────────────────────────────────────

class AgentThought(BaseModel):
    """One intermediate agent utterance spoken before the final response."""
    speaker: SpeakerRole
    text: str


class TurnResponse(BaseModel):
    thoughts: list[AgentThought] = []
    final_response: str = ""


# ──────────────────────────────────────────────────────────────
#  Dialog history
# ──────────────────────────────────────────────────────────────

class DialogEntry(BaseModel):
    """Immutable historical record, appended once its utterance resolved."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: DialogEntryType
    content: str
    speaker: Optional[SpeakerRole] = None      # None for user entries
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "speaker": self.speaker.value if self.speaker else None,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
        }


def format_dialog(entries: list[DialogEntry]) -> str:
    """Render dialog history as plain text, one block per entry."""
    blocks = []
    for entry in entries:
        if entry.type == DialogEntryType.USER:
            label = "You"
        elif entry.type == DialogEntryType.THOUGHT:
            name = speaker_profile(entry.speaker).name if entry.speaker else "Agent"
            label = f"{name} (thinking)"
        else:
            label = speaker_profile(SpeakerRole.GOVERNOR).name
        blocks.append(f"{label}:\n{entry.content}")
    return "\n\n".join(blocks)


# ──────────────────────────────────────────────────────────────
#  Transcription
# ──────────────────────────────────────────────────────────────

class TranscriptSegment(BaseModel):
    """A committed (final) or partial (provisional) span of recognized text."""
    model_config = ConfigDict(frozen=True)

    text: str
    is_final: bool = False
    timestamp: Optional[float] = None          # start of first word, seconds

    @property
    def dedup_key(self) -> str:
        return f"{self.text}-{self.timestamp}"


# ──────────────────────────────────────────────────────────────
#  Background music
# ──────────────────────────────────────────────────────────────

class Track(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    source: str                                # file path or URL
