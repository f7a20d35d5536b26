import pytest
from pydantic import ValidationError

from guildbot.config import BotSettings
from guildbot.intents import Intents


def test_defaults():
    settings = BotSettings(_env_file=None)
    assert settings.intents == int(Intents.default())
    assert settings.shard == (0, 1)
    assert settings.rest_base_url == "https://api.sgroup.qq.com"
    assert settings.reconnect_max_attempts == 10
    assert settings.dispatch_mode == "sequential"


def test_sandbox_switches_rest_base_url():
    settings = BotSettings(sandbox=True)
    assert settings.rest_base_url == "https://sandbox.api.sgroup.qq.com"


def test_intents_accept_names():
    settings = BotSettings(intents="GUILDS|GUILD_MEMBERS")
    assert settings.intents == int(Intents.GUILDS | Intents.GUILD_MEMBERS)


def test_shard_must_be_in_range():
    with pytest.raises(ValidationError):
        BotSettings(shard_id=2, shard_count=2)


def test_log_level_is_normalised():
    assert BotSettings(log_level="debug").log_level == "DEBUG"


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("GUILDBOT_APP_ID", "4242")
    monkeypatch.setenv("GUILDBOT_HEARTBEAT_JITTER_RATIO", "0.5")
    settings = BotSettings()
    assert settings.app_id == "4242"
    assert settings.heartbeat_jitter_ratio == 0.5


def test_yaml_file_is_loaded(monkeypatch, tmp_path):
    config = tmp_path / "bot.yaml"
    config.write_text(
        "app_id: '1001'\nclient_secret: s3cr3t\nintents: [GUILDS, DIRECT_MESSAGE]\ndispatch_mode: concurrent\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("GUILDBOT_CONFIG_FILE", str(config))

    settings = BotSettings()

    assert settings.app_id == "1001"
    assert settings.intents == int(Intents.GUILDS | Intents.DIRECT_MESSAGE)
    assert settings.dispatch_mode == "concurrent"
    assert settings.config_path == config
    assert "s3cr3t" not in repr(settings)


def test_config_file_wins_over_env(monkeypatch, tmp_path):
    config = tmp_path / "bot.yml"
    config.write_text("app_id: from-file\n", encoding="utf-8")
    monkeypatch.setenv("GUILDBOT_CONFIG_FILE", str(config))
    monkeypatch.setenv("GUILDBOT_APP_ID", "from-env")
    monkeypatch.setenv("GUILDBOT_CLIENT_NAME", "env-bot")
    settings = BotSettings()
    assert settings.app_id == "from-file"
    assert settings.client_name == "env-bot"
    assert BotSettings(app_id="explicit").app_id == "explicit"


def test_invalid_yaml_is_rejected(monkeypatch, tmp_path):
    config = tmp_path / "bot.yaml"
    config.write_text("- just\n- a list\n", encoding="utf-8")
    monkeypatch.setenv("GUILDBOT_CONFIG_FILE", str(config))
    with pytest.raises(ValueError):
        BotSettings()
