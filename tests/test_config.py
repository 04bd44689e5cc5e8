import pytest

from delayed_notifier.config import load_settings
from delayed_notifier.delayed_queue import DEFAULT_QUEUE_KEY


def test_defaults_without_file_or_env(tmp_path):
    settings = load_settings(tmp_path / "missing.ini", environ={})
    assert settings.smtp.sender_email == ""
    assert settings.smtp.host == "localhost"
    assert settings.smtp.port == 25
    assert settings.smtp.use_tls is None
    assert settings.smtp.max_retries is None
    assert settings.redis.key == DEFAULT_QUEUE_KEY
    assert settings.server.api_token is None
    assert settings.log_level == "INFO"


def test_file_values_win_over_environment(tmp_path):
    config = tmp_path / "config.ini"
    config.write_text(
        "[smtp]\n"
        "sender_email = noreply@example.com\n"
        "port = 587\n"
        "use_tls = yes\n"
        "max_retries = 0\n"
        "basic_retry_pause = 2.5\n"
        "[redis]\n"
        "url = redis://cache:6379/1\n"
        "timeout = 1.5\n"
        "[worker]\n"
        "tick_interval = 0.5\n"
        "[server]\n"
        "api_token = from-file\n"
        "[logging]\n"
        "level = debug\n"
    )
    env = {"DN_SMTP_PORT": "2525", "DN_API_TOKEN": "from-env", "DN_SMTP_HOST": "mail.local"}
    settings = load_settings(config, environ=env)

    assert settings.smtp.sender_email == "noreply@example.com"
    assert settings.smtp.port == 587
    assert settings.smtp.host == "mail.local"
    assert settings.smtp.use_tls is True
    assert settings.smtp.max_retries == 0
    assert settings.smtp.basic_retry_pause == 2.5
    assert settings.redis.url == "redis://cache:6379/1"
    assert settings.redis.timeout == 1.5
    assert settings.tick_interval == 0.5
    assert settings.server.api_token == "from-file"
    assert settings.log_level == "DEBUG"


def test_config_path_from_environment(tmp_path):
    config = tmp_path / "other.ini"
    config.write_text("[storage]\ndb_path = /tmp/audit.db\n")
    settings = load_settings(environ={"DN_CONFIG": str(config)})
    assert settings.db_path == "/tmp/audit.db"


@pytest.mark.parametrize(
    "env,option",
    [
        ({"DN_SMTP_PORT": "abc"}, "port"),
        ({"DN_REDIS_TIMEOUT": "soon"}, "timeout"),
        ({"DN_SMTP_USE_TLS": "maybe"}, "use_tls"),
    ],
)
def test_invalid_values_name_the_option(tmp_path, env, option):
    with pytest.raises(ValueError, match=option):
        load_settings(tmp_path / "missing.ini", environ=env)
