"""Tests for settings loading and startup validation."""
import textwrap

import pytest

from config.settings import (
    Settings, get_settings, load_settings, settings_from_dict, validate_settings,
)
from models.errors import ConfigurationError


class TestSettingsFromDict:
    def test_defaults(self):
        s = settings_from_dict({})
        assert s.deadlines.sla_hours == {"critical": 2, "high": 4, "medium": 24, "low": 72}
        assert s.deadlines.work_start_hour == 9
        assert s.deadlines.work_end_hour == 17
        assert s.queue.max_page_size == 100
        assert s.scheduler.interval_seconds == 3600
        assert s.suggestions.fallback_confidence == 0.5
        assert s.database.store_backend == "memory"

    def test_partial_sla_override_keeps_other_tiers(self):
        s = settings_from_dict({"deadlines": {"sla_hours": {"low": None, "critical": 1}}})
        assert s.deadlines.sla_hours == {"critical": 1, "high": 4, "medium": 24, "low": None}

    def test_vip_overrides_lowercased(self):
        s = settings_from_dict({"deadlines": {"vip_overrides": {"CEO@Acme.com": 1}}})
        assert s.deadlines.vip_overrides == {"ceo@acme.com": 1.0}

    def test_nested_llm_config(self):
        s = settings_from_dict({"suggestions": {"timeout_s": 3, "llm": {"provider": "openai"}}})
        assert s.suggestions.timeout_s == 3
        assert s.suggestions.llm.provider == "openai"
        assert s.suggestions.llm.max_tokens == 400

    def test_env_substitution(self, monkeypatch):
        monkeypatch.setenv("FOLLOWUP_TEST_KEY", "sk-live")
        s = settings_from_dict({"suggestions": {"llm": {"api_key": "${FOLLOWUP_TEST_KEY}"}},
                                "mailbox": {"base_url": "${FOLLOWUP_UNSET_VAR}"}})
        assert s.suggestions.llm.api_key == "sk-live"
        # Unset variables are left verbatim
        assert s.mailbox.base_url == "${FOLLOWUP_UNSET_VAR}"

    def test_unknown_keys_ignored(self):
        s = settings_from_dict({"queue": {"max_page_size": 10, "colour": "red"}})
        assert s.queue.max_page_size == 10
        assert not hasattr(s.queue, "colour")


class TestValidation:
    def test_defaults_are_valid(self):
        validate_settings(Settings())

    @pytest.mark.parametrize("raw,fragment", [
        ({"deadlines": {"work_start_hour": 18, "work_end_hour": 9}}, "must be after"),
        ({"deadlines": {"timezone": "Nowhere/Special"}}, "time zone"),
        ({"deadlines": {"sla_hours": {"high": 0}}}, "sla_hours.high"),
        ({"deadlines": {"sla_hours": {"urgent": 1}}}, "unknown priority"),
        ({"deadlines": {"at_risk_fraction": 1.5}}, "at_risk_fraction"),
        ({"queue": {"lock_policy": "maybe"}}, "lock_policy"),
        ({"queue": {"max_page_size": 10, "default_page_size": 50}}, "default_page_size"),
        ({"scheduler": {"interval_seconds": 0}}, "interval_seconds"),
        ({"database": {"store_backend": "redis"}}, "store_backend"),
    ])
    def test_invalid(self, raw, fragment):
        with pytest.raises(ConfigurationError, match=fragment):
            validate_settings(settings_from_dict(raw))

    def test_errors_collected(self):
        s = settings_from_dict({"queue": {"lock_policy": "maybe"},
                                "scheduler": {"interval_seconds": -1}})
        with pytest.raises(ConfigurationError) as exc:
            validate_settings(s)
        assert len(exc.value.details["errors"]) == 2


class TestLoadSettings:
    def test_from_yaml(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(textwrap.dedent("""
            debug: true
            deadlines:
              timezone: Europe/Berlin
              work_start_hour: 8
            queue:
              lock_policy: fail
        """))
        s = load_settings(str(path))
        assert s.debug is True
        assert s.deadlines.timezone == "Europe/Berlin"
        assert s.deadlines.work_start_hour == 8
        assert s.queue.lock_policy == "fail"
        assert get_settings() is s

    def test_env_var_path(self, tmp_path, monkeypatch):
        path = tmp_path / "other.yaml"
        path.write_text("app_name: Custom\n")
        monkeypatch.setenv("FOLLOWUP_CONFIG", str(path))
        assert load_settings().app_name == "Custom"

    def test_missing_file_gives_defaults(self, tmp_path):
        s = load_settings(str(tmp_path / "absent.yaml"))
        assert s.app_name == "FollowUpQueue"

    def test_invalid_file_rejected_at_load(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("deadlines:\n  work_start_hour: 17\n  work_end_hour: 9\n")
        with pytest.raises(ConfigurationError):
            load_settings(str(path))
