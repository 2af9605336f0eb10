import os
from unittest.mock import patch

import pytest

from src.relay.config import get_config, init_config
from src.relay.errors import ConfigError


def test_defaults():
    env = {
        "OPENAI_API_KEY": "test_openai_key",
        "TWILIO_ACCOUNT_SID": "ACtest",
        "TWILIO_AUTH_TOKEN": "token",
    }

    with patch.dict(os.environ, env, clear=True):
        get_config.cache_clear()
        config = get_config()

    assert config.port == 5050
    assert config.log_level == "INFO"
    assert config.openai_realtime_model == "gpt-realtime"
    assert config.openai_realtime_voice == "alloy"
    assert config.openai_realtime_temperature == 0.8
    assert config.session_settle_delay_ms == 100
    assert config.settle_delay_seconds == 0.1
    assert config.peer_send_queue_size == 2000
    assert config.prompt_profiles == ("Shopaz", "Gjirafa")
    config.validate()


def test_realtime_url_carries_model_and_temperature():
    env = {
        "OPENAI_REALTIME_URL": "wss://realtime.example.com/v1/realtime",
        "OPENAI_REALTIME_MODEL": "gpt-realtime-mini",
        "OPENAI_REALTIME_TEMPERATURE": "0.6",
    }

    with patch.dict(os.environ, env):
        get_config.cache_clear()
        config = get_config()

    assert config.realtime_url == "wss://realtime.example.com/v1/realtime?model=gpt-realtime-mini&temperature=0.6"


@pytest.mark.parametrize("missing", ["OPENAI_API_KEY", "TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN"])
def test_validate_requires_credentials(missing):
    with patch.dict(os.environ, {missing: ""}):
        get_config.cache_clear()
        config = get_config()

        with pytest.raises(ConfigError, match=missing):
            config.validate()


def test_validate_rejects_empty_profiles():
    with patch.dict(os.environ, {"PROMPT_PROFILES": " , "}):
        get_config.cache_clear()
        config = get_config()

        assert config.prompt_profiles == ()
        with pytest.raises(ConfigError):
            config.validate()


def test_profiles_are_trimmed():
    with patch.dict(os.environ, {"PROMPT_PROFILES": "Shopaz, Gjirafa ,Other"}):
        get_config.cache_clear()
        assert get_config().prompt_profiles == ("Shopaz", "Gjirafa", "Other")


def test_bad_numbers_fall_back_to_defaults():
    with patch.dict(os.environ, {"PORT": "eighty", "OPENAI_REALTIME_TEMPERATURE": "warm"}):
        get_config.cache_clear()
        config = get_config()

    assert config.port == 5050
    assert config.openai_realtime_temperature == 0.8


def test_log_level_is_uppercased():
    with patch.dict(os.environ, {"LOG_LEVEL": "warning"}):
        get_config.cache_clear()
        assert get_config().log_level == "WARNING"


def test_init_config_validates():
    with patch.dict(os.environ, {"OPENAI_API_KEY": ""}):
        get_config.cache_clear()
        with pytest.raises(ConfigError):
            init_config()


def test_config_is_cached():
    assert get_config() is get_config()
