import pytest

from mandapam.config import AppConfig

ENV_VARS = [
    "ENV", "PORTAL_API_KEY", "BACKEND_API_URL", "CONFIRM_POLL_ATTEMPTS", "CONFIRM_POLL_INTERVAL_MS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


# Purpose: Verify the documented defaults of the registration flow.
def test_defaults() -> None:
    config = AppConfig.load_from_env()
    assert config.env == "dev"
    assert config.confirm_poll_attempts == 6
    assert config.confirm_poll_interval_ms == 2000
    assert config.confirm_max_retries == 2
    assert config.phone_check_debounce_ms == 500
    assert config.photo_max_dimension == 800


# Purpose: Verify production refuses to start without the staff API key.
def test_prod_requires_api_key(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "prod")
    with pytest.raises(RuntimeError):
        AppConfig.load_from_env()

    monkeypatch.setenv("PORTAL_API_KEY", "desk-key")
    assert AppConfig.load_from_env().env == "prod"


# Purpose: Verify bad values fall back instead of crashing.
def test_invalid_values_fall_back(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "qa")
    monkeypatch.setenv("CONFIRM_POLL_ATTEMPTS", "six")
    monkeypatch.setenv("BACKEND_API_URL", "https://api.mandapam.example/api/")

    config = AppConfig.load_from_env()

    assert config.env == "dev"
    assert config.confirm_poll_attempts == 6
    assert config.backend_api_url == "https://api.mandapam.example/api"
