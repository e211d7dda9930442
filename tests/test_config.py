"""Unit tests for core/config.py -- Settings validation.

Covers:
- Production mode refuses to start without signing secrets
- Dev mode generates distinct secrets
- Short secrets, equal access/refresh secrets and non-positive TTLs are rejected
"""

import pytest
from pydantic import ValidationError

from core.config import Settings

_SECRETS = {
    "access_token_secret": "a" * 40,
    "refresh_token_secret": "r" * 40,
    "recovery_token_secret": "p" * 40,
}


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """Keep DEBUG, real secrets and any .env file out of these tests."""
    monkeypatch.chdir(tmp_path)
    for name in ("DEBUG", *[k.upper() for k in _SECRETS]):
        monkeypatch.delenv(name, raising=False)


class TestSecrets:
    def test_production_requires_secrets(self):
        with pytest.raises(ValidationError, match="ACCESS_TOKEN_SECRET is required"):
            Settings(debug=False)

    def test_debug_generates_distinct_secrets(self):
        s = Settings(debug=True)
        assert len(s.access_token_secret) >= 32
        assert len({s.access_token_secret, s.refresh_token_secret, s.recovery_token_secret}) == 3

    def test_explicit_secrets_kept(self):
        s = Settings(debug=False, **_SECRETS)
        assert s.access_token_secret == "a" * 40

    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError, match="at least 32"):
            Settings(debug=False, **{**_SECRETS, "recovery_token_secret": "short"})

    def test_access_and_refresh_must_differ(self):
        with pytest.raises(ValidationError, match="must differ"):
            Settings(debug=False, **{**_SECRETS, "refresh_token_secret": "a" * 40})

    def test_secrets_read_from_environment(self, monkeypatch):
        for name, value in _SECRETS.items():
            monkeypatch.setenv(name.upper(), value)
        assert Settings().refresh_token_secret == "r" * 40


class TestOtherFields:
    def test_non_positive_ttl_rejected(self):
        with pytest.raises(ValidationError, match="must be positive"):
            Settings(debug=False, access_token_ttl_seconds=0, **_SECRETS)

    def test_registry_endpoints(self):
        s = Settings(debug=False, person_registry_url="https://r/cpf", company_registry_url="https://r/cnpj", **_SECRETS)
        assert s.registry_endpoints == {"person": "https://r/cpf", "company": "https://r/cnpj"}
