"""Tests for YAML settings loading and environment substitution."""
import textwrap

from config.settings import VoicesConfig, load_settings
from models.schemas import SpeakerRole


def write_config(tmp_path, body):
    path = tmp_path / "settings.yaml"
    path.write_text(textwrap.dedent(body))
    return str(path)


class TestLoadSettings:

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "nope.yaml"))
        assert settings.app_name == "Chorus"
        assert settings.backend.type == "mock"
        assert settings.turn.thought_timeout_s == 30.0
        assert settings.ambient.max_tracks == 10

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_EL_KEY", "sk-123")
        monkeypatch.setenv("TEST_GOV_VOICE", "gov-voice")
        path = write_config(tmp_path, """
            elevenlabs:
              api_key: ${TEST_EL_KEY}
            voices:
              governor: ${TEST_GOV_VOICE}
              thoughts: ${TEST_UNSET_VOICE}
        """)
        settings = load_settings(path)
        assert settings.elevenlabs.api_key == "sk-123"
        assert settings.voices.governor == "gov-voice"
        # unresolved placeholders mean "not configured"
        assert settings.voices.thoughts == ""

    def test_unresolved_api_key_is_empty(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TEST_MISSING_KEY", raising=False)
        path = write_config(tmp_path, """
            elevenlabs:
              api_key: ${TEST_MISSING_KEY}
        """)
        assert load_settings(path).elevenlabs.api_key == ""

    def test_turn_and_ambient_sections(self, tmp_path):
        path = write_config(tmp_path, """
            turn:
              thought_timeout_s: 5
              submit_debounce_ms: 80
            ambient:
              enabled: true
              volume: 0.5
              tracks:
                - source: music/rain.wav
                - id: hum
                  name: Low hum
                  source: music/hum.wav
        """)
        settings = load_settings(path)
        assert settings.turn.thought_timeout_s == 5
        assert settings.turn.submit_debounce_ms == 80
        assert settings.turn.response_timeout_s == 60.0
        assert settings.ambient.enabled is True
        assert [(t.id, t.name) for t in settings.ambient.tracks] == [
            ("rain", "rain"), ("hum", "Low hum"),
        ]

    def test_backend_endpoints_merge_with_defaults(self, tmp_path):
        path = write_config(tmp_path, """
            backend:
              type: rest
              base_url: http://agents.local
              endpoints:
                turn: /v2/{session_id}/turn
        """)
        backend = load_settings(path).backend
        assert backend.type == "rest"
        assert backend.endpoints["turn"] == "/v2/{session_id}/turn"
        assert backend.endpoints["create_session"] == "/conversations"

    def test_config_path_from_environment(self, tmp_path, monkeypatch):
        path = write_config(tmp_path, "app_name: Chorus Dev\n")
        monkeypatch.setenv("CHORUS_CONFIG", path)
        assert load_settings().app_name == "Chorus Dev"

    def test_logging_level_normalized(self, tmp_path):
        path = write_config(tmp_path, """
            logging:
              level: debug
              json: true
        """)
        logging = load_settings(path).logging
        assert logging.level == "DEBUG"
        assert logging.json is True


class TestVoicesConfig:

    def test_agents_share_thoughts_voice(self):
        voices = VoicesConfig(thoughts="t", logic="l", governor="g")
        assert voices.voice_for(SpeakerRole.LOGIC) == "t"
        assert voices.voice_for(SpeakerRole.GOVERNOR) == "g"

    def test_falls_back_to_agent_voice(self):
        voices = VoicesConfig(logic="l")
        assert voices.voice_for(SpeakerRole.INSTINCT) == "l"

    def test_unconfigured_is_text_only(self):
        assert VoicesConfig().voice_for(SpeakerRole.PSYCHE) == ""
