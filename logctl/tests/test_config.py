from __future__ import annotations

import pytest

from logctl.src.config import ConfigError, env_int, load_config


def test_defaults_when_environment_is_empty() -> None:
    config = load_config({})

    assert config.namespace == ""
    assert config.workers == 1
    assert config.lookup_retry_limit == 5
    assert config.mutation_retry_limit == 3
    assert config.retry_base_delay == pytest.approx(0.005)
    assert config.retry_max_delay == pytest.approx(1000.0)
    assert config.profiles.annotation_key == "dk.coop.integration/log-level"
    assert config.profiles.env_name == "LOGGING_CONFIG"
    assert config.kube_context is None


def test_overrides_from_environment() -> None:
    config = load_config(
        {
            "WATCH_NAMESPACE": " payments ",
            "WORKERS": "4",
            "LOOKUP_RETRY_LIMIT": "2",
            "MUTATION_RETRY_LIMIT": "0",
            "RETRY_BASE_DELAY_SECONDS": "0.5",
            "RETRY_MAX_DELAY_SECONDS": "60",
            "RESYNC_SECONDS": "300",
            "HEALTH_PORT": "9090",
            "KUBE_CONTEXT": "kind-dev",
            "LOG_LEVEL_ANNOTATION": "example.com/log-level",
            "LOGGING_CONFIG_ENV_NAME": "LOG_CFG",
            "LOGGING_CONFIG_BASE_URL": "http://config.local/logging",
        }
    )

    assert config.namespace == "payments"
    assert config.workers == 4
    assert config.lookup_retry_limit == 2
    assert config.mutation_retry_limit == 0
    assert config.retry_base_delay == pytest.approx(0.5)
    assert config.retry_max_delay == pytest.approx(60.0)
    assert config.resync_seconds == 300
    assert config.health_port == 9090
    assert config.kube_context == "kind-dev"
    assert config.profiles.annotation_key == "example.com/log-level"
    assert config.profiles.env_name == "LOG_CFG"
    assert config.profiles.resolve("none") == "http://config.local/logging/log4j2-none.xml"


@pytest.mark.parametrize(
    ("env", "message"),
    [
        ({"WORKERS": "0"}, "WORKERS must be >= 1"),
        ({"WORKERS": "many"}, "WORKERS must be an integer"),
        ({"HEALTH_PORT": "70000"}, "HEALTH_PORT must be <= 65535"),
        ({"LOOKUP_RETRY_LIMIT": "-1"}, "LOOKUP_RETRY_LIMIT must be >= 0"),
        ({"RETRY_BASE_DELAY_SECONDS": "fast"}, "RETRY_BASE_DELAY_SECONDS must be a number"),
        (
            {"RETRY_BASE_DELAY_SECONDS": "5", "RETRY_MAX_DELAY_SECONDS": "1"},
            "RETRY_MAX_DELAY_SECONDS must be >= RETRY_BASE_DELAY_SECONDS",
        ),
        ({"LOG_LEVEL_ANNOTATION": "  "}, "LOG_LEVEL_ANNOTATION must be a non-empty string"),
        ({"LOGGING_CONFIG_ENV_NAME": ""}, "LOGGING_CONFIG_ENV_NAME must be a non-empty string"),
    ],
)
def test_invalid_values_raise_config_error(env: dict[str, str], message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        load_config(env)


def test_reads_process_environment_by_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WATCH_NAMESPACE", "from-env")
    monkeypatch.setenv("WORKERS", "2")

    config = load_config()

    assert config.namespace == "from-env"
    assert config.workers == 2


def test_env_int_blank_value_uses_default() -> None:
    assert env_int({"X": "   "}, "X", 7) == 7
