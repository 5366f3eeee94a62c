import pytest

from core import config as config_module
from core.security import (
    bearer_token,
    compute_stripe_signature,
    parse_stripe_signature_header,
    token_matches,
    verify_stripe_signature,
)

SECRET = "whsec_test"
BODY = b'{"id":"evt_1"}'


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    config_module.get_settings.cache_clear()
    yield
    config_module.get_settings.cache_clear()


def _header(timestamp: int, secret: str = SECRET, body: bytes = BODY) -> str:
    return f"t={timestamp},v1={compute_stripe_signature(secret, str(timestamp), body)}"


class TestStripeSignature:
    def test_valid_signature(self):
        assert verify_stripe_signature(BODY, _header(1_700_000_000), SECRET, now=1_700_000_100)

    def test_any_v1_may_match(self):
        header = f"t=1700000000,v1=deadbeef,v1={compute_stripe_signature(SECRET, '1700000000', BODY)}"
        assert verify_stripe_signature(BODY, header, SECRET, now=1_700_000_000)

    def test_tampered_body(self):
        assert not verify_stripe_signature(b'{"id":"evt_2"}', _header(1_700_000_000), SECRET, now=1_700_000_000)

    def test_outside_tolerance(self):
        header = _header(1_700_000_000)
        assert not verify_stripe_signature(BODY, header, SECRET, tolerance_seconds=300, now=1_700_000_301)
        assert verify_stripe_signature(BODY, header, SECRET, tolerance_seconds=0, now=1_800_000_000)

    def test_malformed_headers(self):
        assert not verify_stripe_signature(BODY, "", SECRET)
        assert not verify_stripe_signature(BODY, "v1=abc", SECRET)
        assert not verify_stripe_signature(BODY, "t=notanumber,v1=abc", SECRET)
        assert not verify_stripe_signature(BODY, _header(1_700_000_000), "", now=1_700_000_000)

    def test_header_parsing(self):
        assert parse_stripe_signature_header("t=1, v1=a, v0=x, v1=b") == ("1", ["a", "b"])


class TestTokens:
    def test_token_matches_any_candidate(self):
        assert token_matches("secret", [None, "", " secret "])
        assert not token_matches("secret", [None, "other"])

    def test_unconfigured_token_accepts_everything(self):
        assert token_matches("", [None])

    def test_bearer_token(self):
        assert bearer_token("Bearer abc") == "abc"
        assert bearer_token("bearer  abc ") == "abc"
        assert bearer_token("Basic abc") == ""
        assert bearer_token(None) == ""


class TestRuntimeGuardrails:
    def test_non_local_debug_mode_is_blocked(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        monkeypatch.setenv("DEBUG", "true")
        monkeypatch.setenv("STORE_ID", "store-paris")
        monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_live")

        with pytest.raises(ValueError, match="debug=true"):
            config_module.get_settings()

    def test_non_local_default_store_is_blocked(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "staging")
        monkeypatch.setenv("DEBUG", "false")
        monkeypatch.setenv("STORE_ID", config_module.DEFAULT_STORE_ID)
        monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_live")

        with pytest.raises(ValueError, match="default store id"):
            config_module.get_settings()

    def test_non_local_missing_stripe_secret_is_blocked(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        monkeypatch.setenv("DEBUG", "false")
        monkeypatch.setenv("STORE_ID", "store-paris")
        monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "")

        with pytest.raises(ValueError, match="Stripe webhook secret"):
            config_module.get_settings()

    def test_vat_rate_bounds(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "local")
        monkeypatch.setenv("FRENCH_VAT_RATE", "1.5")

        with pytest.raises(ValueError, match="french_vat_rate"):
            config_module.get_settings()

    def test_local_allows_dev_defaults(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "local")
        monkeypatch.setenv("DEBUG", "false")
        monkeypatch.setenv("STORE_ID", config_module.DEFAULT_STORE_ID)

        settings = config_module.get_settings()
        assert settings.app_env == "local"
        assert settings.french_vat_rate == 0.2
