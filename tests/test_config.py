import pytest

from config import ConfigurationError, reload_config


def test_memory_backend_needs_no_supabase(config):
    assert config.database_backend == "memory"
    assert config.supabase is None
    assert config.pricing.booking_fee_per_package == 1.00
    assert config.stripe.session_ttl_minutes == 30


def test_safe_summary_has_no_secrets(config):
    summary = str(config.get_safe_summary())

    assert config.stripe.secret_key not in summary
    assert config.stripe.webhook_secret not in summary


def test_supabase_backend_requires_credentials(monkeypatch):
    monkeypatch.setenv("DATABASE_BACKEND", "supabase")
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_SERVICE_ROLE_KEY", raising=False)

    with pytest.raises(ConfigurationError):
        reload_config()


def test_supabase_url_must_be_https(monkeypatch):
    monkeypatch.setenv("DATABASE_BACKEND", "supabase")
    monkeypatch.setenv("SUPABASE_URL", "http://insecure.example")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "key")

    with pytest.raises(ConfigurationError):
        reload_config()


@pytest.mark.parametrize("name,value", [
    ("CHECKOUT_SESSION_TTL_MINUTES", "10"),
    ("BOOKING_FEE_PER_PACKAGE", "-1"),
    ("MAX_BULK_QUANTITY", "5"),
    ("STRIPE_CURRENCY", "dollars"),
    ("LOG_LEVEL", "LOUD"),
    ("DATABASE_BACKEND", "sqlite"),
])
def test_invalid_values_rejected(monkeypatch, name, value):
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigurationError):
        reload_config()


def test_missing_stripe_secret(monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)

    with pytest.raises(ConfigurationError):
        reload_config()
