import pytest
from pydantic import ValidationError

from services.common import ServiceSettings


def test_currency_is_upper_cased() -> None:
    settings = ServiceSettings(pricing_default_currency="eur")
    assert settings.pricing_default_currency == "EUR"


def test_non_alphabetic_currency_is_rejected() -> None:
    with pytest.raises(ValidationError):
        ServiceSettings(pricing_default_currency="U5D")


def test_blank_prediction_url_disables_predictions() -> None:
    settings = ServiceSettings(pricing_prediction_url="   ")
    assert settings.pricing_prediction_url is None
    assert settings.prediction_enabled is False


def test_prediction_settings_read_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SERVICE_PRICING_PREDICTION_URL", "http://predictor.internal")
    monkeypatch.setenv("SERVICE_PRICING_MAX_BATCH_SIZE", "25")
    settings = ServiceSettings()
    assert settings.prediction_enabled is True
    assert settings.pricing_prediction_url == "http://predictor.internal"
    assert settings.pricing_max_batch_size == 25
