"""Tests for YAML configuration loading."""
import textwrap

import pytest

from config.settings import Settings, load_settings


@pytest.fixture
def clean_env(monkeypatch):
    for var in ("HMAC_SECRET", "QUEUE_CONCURRENCY", "LOG_JSON", "REDIS_URL", "RETRY_DELAY"):
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


def write_config(tmp_path, content: str) -> str:
    path = tmp_path / "settings.yaml"
    path.write_text(textwrap.dedent(content))
    return str(path)


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path, clean_env):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings == Settings()
        assert settings.worker.concurrency == 20
        assert settings.worker.max_rate == 100
        assert settings.retry.max_attempts == 5
        assert settings.retry.base_delay_ms == 1000
        assert settings.routing.delay_ms == 2000

    def test_env_substitution_and_coercion(self, tmp_path, clean_env):
        clean_env.setenv("QUEUE_CONCURRENCY", "7")
        clean_env.setenv("LOG_JSON", "true")
        clean_env.setenv("REDIS_URL", "redis://cache:6379")
        path = write_config(tmp_path, """
            queue:
              backend: redis
              redis_url: "${REDIS_URL}"
            worker:
              concurrency: "${QUEUE_CONCURRENCY}"
            logging:
              json_output: "${LOG_JSON}"
        """)
        settings = load_settings(path)
        assert settings.queue.backend == "redis"
        assert settings.queue.redis_url == "redis://cache:6379"
        assert settings.worker.concurrency == 7
        assert settings.logging.json_output is True

    def test_unresolved_variables_fall_back_to_defaults(self, tmp_path, clean_env):
        path = write_config(tmp_path, """
            retry:
              base_delay_ms: "${RETRY_DELAY}"
              max_attempts: 3
        """)
        settings = load_settings(path)
        assert settings.retry.base_delay_ms == 1000
        assert settings.retry.max_attempts == 3

    def test_unknown_keys_ignored(self, tmp_path, clean_env):
        path = write_config(tmp_path, """
            routing:
              backend: http
              base_url: http://router:8080
              something_else: 1
        """)
        settings = load_settings(path)
        assert settings.routing.backend == "http"
        assert settings.routing.base_url == "http://router:8080"

    def test_secret_comes_from_environment(self, tmp_path, clean_env):
        clean_env.setenv("HMAC_SECRET", "s3cret")
        path = write_config(tmp_path, "app_name: gw\n")
        settings = load_settings(path)
        assert settings.ingestion.hmac_secret == "s3cret"
        assert settings.app_name == "gw"

    def test_config_path_from_environment(self, tmp_path, clean_env):
        path = write_config(tmp_path, "debug: true\n")
        clean_env.setenv("EVENT_GATEWAY_CONFIG", path)
        assert load_settings().debug is True

    def test_bundled_config_loads(self, clean_env):
        clean_env.delenv("EVENT_GATEWAY_CONFIG", raising=False)
        settings = load_settings()
        assert settings.app_name == "event-gateway"
        assert settings.queue.name == "events"
