from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path

import pytest

from app.core.config import TrackerSettings, load_settings
from app.core.env import load_env_if_present
from tracker.core.errors import ConfigError


GOOD_KEY = "0123456789abcdef"


def test_defaults():
    s = TrackerSettings()
    assert s.max_requests_per_day_per_key == 2000
    assert s.daily_limit_buffer == 50
    assert s.min_interval == timedelta(milliseconds=220)
    assert s.historical_start_block == 840000
    assert s.backfill_chunk_size == 1000
    assert s.csv_file == Path("bitmap_data.csv")

    policy = s.retry_policy()
    assert policy.max_retries == 2
    assert policy.backoff(1) == 5.0
    assert policy.backoff(5) == 30.0
    assert policy.rate_limit_cooldown == 60.0
    assert policy.daily_limit_cooldown == 3600.0


def test_env_values_are_parsed():
    s = load_settings(
        {
            "GENIIDATA_API_KEYS": f"{GOOD_KEY}, your-api-key-here ,short,",
            "USER_AGENTS": "agent-a,agent-b",
            "PROXY_LIST": "http://p1:8080",
            "REQUEST_INTERVAL": "500",
            "HISTORICAL_START_BLOCK": "850000",
            "ROTATE_REQUEST_HEADERS": "false",
            "AUTO_COMMIT_CSV": "yes",
            "CSV_FILE": "data/out.csv",
        }
    )
    assert s.api_keys == [GOOD_KEY]
    assert s.user_agents == ["agent-a", "agent-b"]
    assert s.min_interval == timedelta(milliseconds=500)
    assert s.historical_start_block == 850000
    assert s.rotate_request_headers is False
    assert s.auto_commit_csv is True
    assert s.csv_file == Path("data/out.csv")
    # Proxies only apply when rotation is switched on.
    assert s.active_proxies == []


def test_proxy_rotation_opt_in():
    s = load_settings({"PROXY_LIST": "http://p1:8080,http://p2:8080", "USE_PROXY_ROTATION": "true"})
    assert s.active_proxies == ["http://p1:8080", "http://p2:8080"]


def test_invalid_integer_is_a_config_error():
    with pytest.raises(ConfigError):
        load_settings({"MAX_REQUESTS_PER_DAY_PER_KEY": "lots"})


def test_out_of_range_value_is_a_config_error():
    with pytest.raises(ConfigError):
        load_settings({"BACKFILL_CHUNK_SIZE": "0"})


def test_yaml_overrides_then_env_wins(tmp_path):
    cfg = tmp_path / "tracker.yaml"
    cfg.write_text("historical_start_block: 845000\nsort_every: 10\n", encoding="utf-8")

    s = load_settings({"TRACKER_CONFIG_YAML": str(cfg), "SORT_EVERY": "20"})

    assert s.historical_start_block == 845000
    assert s.sort_every == 20


def test_yaml_unknown_key_rejected(tmp_path):
    cfg = tmp_path / "tracker.yaml"
    cfg.write_text("not_a_setting: 1\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_settings({"TRACKER_CONFIG_YAML": str(cfg)})


def test_env_file_does_not_override_existing(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# comment\nexport TRACKER_TEST_A='from-file'\nTRACKER_TEST_B=\"quoted\"\nnot a line\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("TRACKER_TEST_A", "from-env")
    # Registered first so teardown removes the value the loader sets.
    monkeypatch.setenv("TRACKER_TEST_B", "placeholder")
    monkeypatch.delenv("TRACKER_TEST_B")

    loaded = load_env_if_present(search=[env_file])

    assert loaded == [env_file]
    assert os.environ["TRACKER_TEST_A"] == "from-env"
    assert os.environ["TRACKER_TEST_B"] == "quoted"
