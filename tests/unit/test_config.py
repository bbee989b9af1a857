import pytest

from async_store.config import Settings


def test_defaults_representative_fields():
    s = Settings()
    assert s.STORE_TTL_SECONDS is None
    assert s.STORE_FAILSTATE_TTL_SECONDS == 5.0
    assert s.STORE_BATCH_SIZE == 40
    assert s.STORE_THROTTLE_SECONDS == 0.2
    assert s.LOG_LEVEL == "INFO"
    assert s.LOG_JSON is False


def test_env_overrides_float_int_bool(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("STORE_TTL_SECONDS", "30.5")
    monkeypatch.setenv("store_batch_size", "7")
    monkeypatch.setenv("LOG_JSON", "true")

    s = Settings()  # picks up env vars

    assert s.STORE_TTL_SECONDS == 30.5
    assert s.STORE_BATCH_SIZE == 7
    assert s.LOG_JSON is True


@pytest.mark.parametrize(
    "key,value",
    [
        ("STORE_BATCH_SIZE", "0"),
        ("STORE_THROTTLE_SECONDS", "-0.1"),
        ("STORE_TTL_SECONDS", "-1"),
        ("LOG_LEVEL", "LOUD"),
    ],
)
def test_invalid_env_values_rejected(monkeypatch: pytest.MonkeyPatch, key: str, value: str):
    monkeypatch.setenv(key, value)
    with pytest.raises(Exception):
        Settings()


def test_negative_failstate_ttl_allowed(monkeypatch: pytest.MonkeyPatch):
    # Non-positive means "permanent until cleared"
    monkeypatch.setenv("STORE_FAILSTATE_TTL_SECONDS", "-1")
    assert Settings().STORE_FAILSTATE_TTL_SECONDS == -1.0
