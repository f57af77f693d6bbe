"""
Session context — the explicit per-session state handle.

Every component that needs to know "where are we in the conversation"
reads this object; only the TurnController writes ``state``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from models.schemas import (
    AgentThought,
    DialogEntry,
    SpeakerRole,
    TurnOwner,
    TurnState,
    format_dialog,
    speaker_profile,
)


@dataclass
class SessionContext:
    session_id: Optional[str] = None
    state: TurnState = TurnState.IDLE
    turn_index: int = 0
    dialog: list[DialogEntry] = field(default_factory=list)

    # In-flight AI turn, for display and transcript export
    current_thoughts: list[AgentThought] = field(default_factory=list)
    pending_response: str = ""
    active_text: str = ""
    active_speaker: Optional[SpeakerRole] = None

    last_error: Optional[str] = None

    @property
    def owner(self) -> Optional[TurnOwner]:
        return self.state.owner

    @property
    def is_ai_turn(self) -> bool:
        return self.owner == TurnOwner.AI

    def clear_turn(self) -> None:
        self.current_thoughts = []
        self.pending_response = ""
        self.active_text = ""
        self.active_speaker = None

    def export_text(self) -> str:
        """Dialog so far plus whatever the in-flight turn has produced."""
        text = format_dialog(self.dialog)
        pending = [
            f"{_thought_label(t.speaker)}:\n{t.text}" for t in self.current_thoughts
        ]
        if self.pending_response:
            pending.append(f"Governor:\n{self.pending_response}")
        return "\n\n".join(part for part in [text, *pending] if part)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "owner": self.owner.value if self.owner else None,
            "turn_index": self.turn_index,
            "active_text": self.active_text,
            "active_speaker": self.active_speaker.value if self.active_speaker else None,
            "current_thoughts": [t.model_dump(mode="json") for t in self.current_thoughts],
            "dialog": [e.to_dict() for e in self.dialog],
            "last_error": self.last_error,
        }


def _thought_label(role: SpeakerRole) -> str:
    return f"{speaker_profile(role).name} (thinking)"
