import pytest
from pydantic import ValidationError

from app.settings import Settings


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


def test_defaults_are_dev_friendly():
    config = _settings()

    assert config.app_env == "dev"
    assert config.reservation_hold_minutes == 15
    assert config.platform_commission_rate == 0.15
    assert config.reconcile_min_capacity == 2
    assert config.cors_origins == []


def test_prod_requires_identity_proxy_secret():
    with pytest.raises(ValidationError, match="IDENTITY_PROXY_SECRET"):
        _settings(app_env="prod", metrics_token="token")


def test_prod_requires_metrics_token_when_metrics_enabled():
    with pytest.raises(ValidationError, match="METRICS_TOKEN"):
        _settings(app_env="prod", identity_proxy_secret="proxy")

    config = _settings(app_env="prod", identity_proxy_secret="proxy", metrics_enabled=False)
    assert config.metrics_enabled is False


def test_prod_disallows_testing_mode():
    with pytest.raises(ValidationError, match="testing"):
        _settings(app_env="prod", identity_proxy_secret="proxy", metrics_token="token", testing=True)


@pytest.mark.parametrize("rate", [-0.1, 1.5])
def test_commission_rate_must_be_a_fraction(rate):
    with pytest.raises(ValidationError):
        _settings(platform_commission_rate=rate)


def test_hold_minutes_must_be_positive():
    with pytest.raises(ValidationError):
        _settings(reservation_hold_minutes=0)


def test_dynamic_pricing_tiers_are_sorted_highest_first():
    config = _settings(dynamic_pricing_tiers="0.5:1.1, 0.9:1.5")

    assert config.dynamic_pricing_tiers == [(0.9, 1.5), (0.5, 1.1)]


def test_invalid_dynamic_pricing_tier_is_rejected():
    with pytest.raises(ValidationError):
        _settings(dynamic_pricing_tiers="1.5:2")


@pytest.mark.parametrize(
    "raw",
    ['["https://app.instacares.example", "https://admin.instacares.example"]',
     "https://app.instacares.example, https://admin.instacares.example"],
)
def test_cors_origins_accept_json_or_csv(raw):
    config = _settings(cors_origins=raw)

    assert config.cors_origins == ["https://app.instacares.example", "https://admin.instacares.example"]
