import pytest

from infraplan import EngineConfig
from infraplan.providers import RetryPolicy


def test_defaults():
    config = EngineConfig()

    assert config.max_concurrency == 10
    assert config.default_timeout == 300.0
    assert config.retry_policy() is None
    assert config.state_store_config() == {"backend": "memory"}


def test_from_env(monkeypatch):
    monkeypatch.setenv("INFRAPLAN_MAX_CONCURRENCY", "4")
    monkeypatch.setenv("INFRAPLAN_DEFAULT_TIMEOUT", "none")
    monkeypatch.setenv("INFRAPLAN_RETRY_ATTEMPTS", "5")
    monkeypatch.setenv("INFRAPLAN_RETRY_BASE_DELAY", "0.25")
    monkeypatch.setenv("INFRAPLAN_TRACING", "off")
    monkeypatch.setenv("INFRAPLAN_STATE_BACKEND", "mongodb")
    monkeypatch.setenv("INFRAPLAN_STATE_URI", "mongodb://state-db:27017")
    monkeypatch.setenv("INFRAPLAN_STATE_DB", "platform")
    monkeypatch.setenv("INFRAPLAN_STATE_COLLECTION", "staging")

    config = EngineConfig.from_env()

    assert config.max_concurrency == 4
    assert config.default_timeout is None
    assert not config.enable_tracing
    assert config.retry_policy() == RetryPolicy(max_attempts=5, base_delay=0.25, max_delay=30.0)
    assert config.state_store_config() == {
        "backend": "mongodb",
        "uri": "mongodb://state-db:27017",
        "db_name": "platform",
        "collection": "staging",
    }


def test_retry_policy_gives_each_attempt_the_deadline():
    policy = EngineConfig(default_timeout=2.0, retry_attempts=3, retry_base_delay=0.5).retry_policy()

    assert policy.attempt_timeout == 2.0
    assert policy.total_timeout() == 3 * 2.0 + 0.5 + 1.0


def test_from_env_overrides_win(monkeypatch):
    monkeypatch.setenv("INFRAPLAN_MAX_CONCURRENCY", "4")
    assert EngineConfig.from_env(max_concurrency=8).max_concurrency == 8


def test_from_env_ignores_unset(monkeypatch):
    for name in ("INFRAPLAN_MAX_CONCURRENCY", "INFRAPLAN_DEFAULT_TIMEOUT", "INFRAPLAN_TRACING"):
        monkeypatch.delenv(name, raising=False)

    config = EngineConfig.from_env()

    assert config.max_concurrency == 10
    assert config.default_timeout == 300.0
    assert config.enable_tracing


@pytest.mark.parametrize("kwargs", [
    {"max_concurrency": 0},
    {"default_timeout": -1.0},
    {"retry_attempts": 0},
])
def test_invalid_values(kwargs):
    with pytest.raises(ValueError):
        EngineConfig(**kwargs)
