"""
Configuration loader for the Chorus voice orchestrator.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from models.schemas import SpeakerRole, Track


@dataclass
class ElevenLabsConfig:
    api_key: str = ""
    base_url: str = "https://api.elevenlabs.io"
    model_id: str = "eleven_turbo_v2_5"
    output_format: str = "pcm_16000"           # raw PCM keeps playback decoder-free
    sample_rate: int = 16000
    scribe_model_id: str = "scribe_v2_realtime"
    language_code: str = "en"


@dataclass
class VoicesConfig:
    """Voice IDs per speaker. Empty means text-only for that speaker."""
    thoughts: str = ""
    instinct: str = ""
    logic: str = ""
    psyche: str = ""
    governor: str = ""

    def voice_for(self, role: SpeakerRole) -> str:
        if role == SpeakerRole.GOVERNOR:
            return self.governor
        # Agents share the dedicated thoughts voice when one is configured
        return self.thoughts or self.instinct or self.logic or self.psyche


@dataclass
class TurnConfig:
    thought_timeout_s: float = 30.0
    response_timeout_s: float = 60.0
    turn_guard_grace_s: float = 5.0
    fallback_ms_per_char: int = 15
    thought_fallback_cap_ms: int = 1200
    response_fallback_cap_ms: int = 2000
    submit_debounce_ms: int = 150


@dataclass
class AmbientConfig:
    enabled: bool = False
    volume: float = 0.3
    crossfade_ms: int = 4000
    tick_ms: int = 50
    start_debounce_ms: int = 300
    max_tracks: int = 10
    tracks: list[Track] = field(default_factory=list)
    thinking_source: str = ""
    thinking_volume: float = 0.04
    cue_volume: float = 0.03


@dataclass
class BackendConfig:
    type: str = "mock"                         # "rest" | "mock"
    base_url: str = ""
    auth_type: str = "bearer"
    auth_credentials: dict[str, Any] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=lambda: {
        "create_session": "/conversations",
        "opener": "/conversations/{session_id}/opener",
        "turn": "/conversations/{session_id}/turns",
    })
    timeout_s: float = 60.0


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class Settings:
    app_name: str = "Chorus"
    debug: bool = False
    elevenlabs: ElevenLabsConfig = field(default_factory=ElevenLabsConfig)
    voices: VoicesConfig = field(default_factory=VoicesConfig)
    turn: TurnConfig = field(default_factory=TurnConfig)
    ambient: AmbientConfig = field(default_factory=AmbientConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _unresolved(value: str) -> bool:
    return value.startswith("${") and value.endswith("}")


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "CHORUS_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "elevenlabs" in raw:
            el = raw["elevenlabs"]
            api_key = el.get("api_key", "")
            settings.elevenlabs = ElevenLabsConfig(
                api_key="" if _unresolved(api_key) else api_key,
                base_url=el.get("base_url", settings.elevenlabs.base_url),
                model_id=el.get("model_id", settings.elevenlabs.model_id),
                output_format=el.get("output_format", settings.elevenlabs.output_format),
                sample_rate=el.get("sample_rate", settings.elevenlabs.sample_rate),
                scribe_model_id=el.get("scribe_model_id", settings.elevenlabs.scribe_model_id),
                language_code=el.get("language_code", settings.elevenlabs.language_code),
            )

        if "voices" in raw:
            v = {k: ("" if _unresolved(str(val)) else str(val or ""))
                 for k, val in raw["voices"].items()}
            settings.voices = VoicesConfig(
                thoughts=v.get("thoughts", ""),
                instinct=v.get("instinct", ""),
                logic=v.get("logic", ""),
                psyche=v.get("psyche", ""),
                governor=v.get("governor", ""),
            )

        if "turn" in raw:
            t = raw["turn"]
            d = TurnConfig()
            settings.turn = TurnConfig(
                thought_timeout_s=t.get("thought_timeout_s", d.thought_timeout_s),
                response_timeout_s=t.get("response_timeout_s", d.response_timeout_s),
                turn_guard_grace_s=t.get("turn_guard_grace_s", d.turn_guard_grace_s),
                fallback_ms_per_char=t.get("fallback_ms_per_char", d.fallback_ms_per_char),
                thought_fallback_cap_ms=t.get("thought_fallback_cap_ms", d.thought_fallback_cap_ms),
                response_fallback_cap_ms=t.get("response_fallback_cap_ms", d.response_fallback_cap_ms),
                submit_debounce_ms=t.get("submit_debounce_ms", d.submit_debounce_ms),
            )

        if "ambient" in raw:
            a = raw["ambient"]
            d = AmbientConfig()
            settings.ambient = AmbientConfig(
                enabled=a.get("enabled", d.enabled),
                volume=a.get("volume", d.volume),
                crossfade_ms=a.get("crossfade_ms", d.crossfade_ms),
                tick_ms=a.get("tick_ms", d.tick_ms),
                start_debounce_ms=a.get("start_debounce_ms", d.start_debounce_ms),
                max_tracks=a.get("max_tracks", d.max_tracks),
                tracks=[
                    Track(id=tr.get("id") or Path(tr["source"]).stem,
                          name=tr.get("name") or Path(tr["source"]).stem,
                          source=tr["source"])
                    for tr in a.get("tracks", [])
                ],
                thinking_source=a.get("thinking_source", d.thinking_source),
                thinking_volume=a.get("thinking_volume", d.thinking_volume),
                cue_volume=a.get("cue_volume", d.cue_volume),
            )

        if "backend" in raw:
            be = raw["backend"]
            d = BackendConfig()
            settings.backend = BackendConfig(
                type=be.get("type", d.type),
                base_url=be.get("base_url", ""),
                auth_type=be.get("auth_type", d.auth_type),
                auth_credentials=be.get("auth_credentials", {}),
                endpoints={**d.endpoints, **be.get("endpoints", {})},
                timeout_s=be.get("timeout_s", d.timeout_s),
            )

        if "logging" in raw:
            lg = raw["logging"]
            settings.logging = LoggingConfig(
                level=str(lg.get("level", "INFO")).upper(),
                json=bool(lg.get("json", False)),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
