from pathlib import Path

import pytest

from trustguard.trust.domain.config import AntiSpamSettings, TrustSettings, load_trust_settings

SAMPLE_CONFIG = Path(__file__).resolve().parents[2] / "config" / "trust.yml"


def test_defaults_without_a_config_file() -> None:
    settings = load_trust_settings(None)
    assert settings == TrustSettings()
    assert settings.damping == 0.85
    assert settings.min_cluster_size == 3


def test_shipped_sample_matches_defaults() -> None:
    assert load_trust_settings(SAMPLE_CONFIG) == TrustSettings()


def test_sections_are_flattened(tmp_path) -> None:
    path = tmp_path / "trust.yml"
    path.write_text(
        "engine:\n"
        "  damping: 0.7\n"
        "  max_iterations: 40\n"
        "detector:\n"
        "  ratio_threshold: 0.9\n"
        "ban_propagation:\n"
        "  ban_propagation_threshold: 3\n",
        encoding="utf-8",
    )
    settings = load_trust_settings(path)
    assert settings.damping == 0.7
    assert settings.max_iterations == 40
    assert settings.ratio_threshold == 0.9
    assert settings.ban_propagation_threshold == 3
    assert settings.epsilon == TrustSettings().epsilon


def test_missing_file_falls_back_to_defaults(tmp_path) -> None:
    assert load_trust_settings(tmp_path / "absent.yml") == TrustSettings()


def test_invalid_values_fall_back_to_defaults(tmp_path) -> None:
    path = tmp_path / "trust.yml"
    path.write_text("engine:\n  damping: 1.5\n", encoding="utf-8")
    assert load_trust_settings(path) == TrustSettings()


def test_malformed_yaml_falls_back_to_defaults(tmp_path) -> None:
    path = tmp_path / "trust.yml"
    path.write_text("engine: [unclosed\n", encoding="utf-8")
    assert load_trust_settings(path) == TrustSettings()


def test_trust_settings_validation() -> None:
    with pytest.raises(ValueError):
        TrustSettings(min_cluster_size=1)
    with pytest.raises(ValueError):
        TrustSettings(epsilon=0)


def test_anti_spam_settings_coercion() -> None:
    settings = AntiSpamSettings.from_mapping(
        {
            "link_hold_enabled": "false",
            "new_account_days": "14",
            "word_filter": "spam, scam ,",
            "burst_post_count": None,
            "unknown_key": 1,
        }
    )
    assert settings.link_hold_enabled is False
    assert settings.new_account_days == 14
    assert settings.word_filter == ("spam", "scam")
    assert settings.burst_post_count == AntiSpamSettings().burst_post_count
    assert settings.write_budget(True) == 3
    assert settings.write_budget(False) == 10


def test_malformed_anti_spam_value_keeps_default() -> None:
    settings = AntiSpamSettings.from_mapping({"first_post_queue_count": "lots"})
    assert settings.first_post_queue_count == 3
