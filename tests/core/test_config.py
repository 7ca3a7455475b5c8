import pytest
from pydantic import ValidationError

from core.config import Settings


def make(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)  # type: ignore[call-arg]


def test_cors_origins_from_csv_and_json():
    assert make(CORS_ORIGINS="http://a.test, http://b.test").CORS_ORIGINS == [
        "http://a.test",
        "http://b.test",
    ]
    assert make(CORS_ORIGINS='["http://c.test"]').CORS_ORIGINS == ["http://c.test"]
    assert make(CORS_ORIGINS="").CORS_ORIGINS == []


def test_cors_origins_rejects_bad_json():
    with pytest.raises(ValidationError):
        make(CORS_ORIGINS="[not json")


def test_title_delimiter_must_be_single_character():
    with pytest.raises(ValidationError):
        make(TITLE_DELIMITER="$$")


def test_unknown_title_policy_is_rejected():
    with pytest.raises(ValidationError):
        make(UNTERMINATED_TITLE_POLICY="keep")


@pytest.mark.parametrize(
    "overrides",
    [
        {"POLL_INTERVAL_SECONDS": 0},
        {"GRACE_INTERVAL_SECONDS": -1},
        {"POLL_INTERVAL_SECONDS": 5, "READINESS_TIMEOUT_SECONDS": 1},
    ],
)
def test_timing_settings_are_validated(overrides):
    with pytest.raises(ValidationError):
        make(**overrides)


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("POLL_INTERVAL_SECONDS", "0.25")
    monkeypatch.setenv("TERMINAL_EVENTS", '["end"]')

    settings = make()

    assert settings.POLL_INTERVAL_SECONDS == 0.25
    assert settings.TERMINAL_EVENTS == ["end"]
