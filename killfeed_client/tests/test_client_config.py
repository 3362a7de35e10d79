from __future__ import annotations

import json

from killfeed_client.client_config import FeedSettings, load_feed_settings


def test_missing_or_invalid_file_uses_defaults(tmp_path):
    assert load_feed_settings(tmp_path / "missing.json") == FeedSettings()

    broken = tmp_path / "killfeed_settings.json"
    broken.write_text("[not valid", encoding="utf-8")
    assert load_feed_settings(broken) == FeedSettings()

    broken.write_text(json.dumps(["list"]), encoding="utf-8")
    assert load_feed_settings(broken) == FeedSettings()


def test_defaults_match_feed_constants():
    settings = FeedSettings()
    assert settings.max_ui_events == 250
    assert settings.page_size == 25
    assert settings.search_debounce_ms == 300
    assert settings.pagination_cooldown_ms == 5000
    assert settings.cache_save_probability == 0.15


def test_values_are_read_and_clamped(tmp_path):
    path = tmp_path / "killfeed_settings.json"
    path.write_text(
        json.dumps(
            {
                "max_ui_events": 3,
                "page_size": "40",
                "search_debounce_ms": "soon",
                "cache_save_probability": 4,
                "connect_watchdog_ms": 10,
                "client_log_retention": 50,
                "initial_limit": 60,
            }
        ),
        encoding="utf-8",
    )

    settings = load_feed_settings(path)

    assert settings.max_ui_events == 10
    assert settings.page_size == 40
    assert settings.search_debounce_ms == 300
    assert settings.cache_save_probability == 1.0
    assert settings.connect_watchdog_ms == 1000
    assert settings.client_log_retention == 20
    assert settings.initial_limit == 60
