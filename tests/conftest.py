"""
tests/conftest.py -- Shared fixtures for identity provider tests.

This module provides:
  - settings: explicit Settings with fixed, distinct signing secrets
  - store: a fresh in-memory IdentityStore per test
  - service: AuthService wired to store + settings
  - project: a stored Project to authorize users against
  - make_cpf / make_cnpj: build checksum-valid tax IDs from a digit prefix
  - person_record / company_record: registry payloads as core.fetcher returns them

The DEBUG env var must be set before any core/auth import so get_settings()
can auto-generate secrets instead of raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Generator

# CRITICAL: Set DEBUG before any auth/core import.
os.environ.setdefault("DEBUG", "true")

import pytest

from auth.service import AuthService
from auth.store import IdentityStore
from core.config import Settings
from core.models import Project

# ---------------------------------------------------------------------------
# Tax-ID builders
# ---------------------------------------------------------------------------


def _cpf_digit(digits: str) -> int:
    weight = len(digits) + 1
    total = sum(int(d) * (weight - i) for i, d in enumerate(digits))
    remainder = (total * 10) % 11
    return 0 if remainder == 10 else remainder


def _cnpj_digit(digits: str) -> int:
    weights = [6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2][-len(digits) :]
    remainder = sum(int(d) * w for d, w in zip(digits, weights)) % 11
    return 0 if remainder < 2 else 11 - remainder


@pytest.fixture
def make_cpf() -> Callable[[str], str]:
    """Return a builder: 9-digit base -> 11-digit CPF with valid check digits."""

    def build(base: str) -> str:
        first = _cpf_digit(base)
        second = _cpf_digit(base + str(first))
        return f"{base}{first}{second}"

    return build


@pytest.fixture
def make_cnpj() -> Callable[[str], str]:
    """Return a builder: 12-digit base -> 14-digit CNPJ with valid check digits."""

    def build(base: str) -> str:
        first = _cnpj_digit(base)
        second = _cnpj_digit(base + str(first))
        return f"{base}{first}{second}"

    return build


# ---------------------------------------------------------------------------
# Store / service
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        debug=True,
        access_token_secret="a" * 40,
        refresh_token_secret="r" * 40,
        recovery_token_secret="p" * 40,
        person_registry_url="https://registry.test/cpf",
        company_registry_url="https://registry.test/cnpj",
    )


@pytest.fixture
def store() -> Generator[IdentityStore, None, None]:
    s = IdentityStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def service(store: IdentityStore, settings: Settings) -> AuthService:
    return AuthService(store, settings=settings)


@pytest.fixture
def project(store: IdentityStore) -> Project:
    project_id = store.create_project(Project(name="Portal", site="https://portal.example.com", secret="s3cret"))
    return store.get_project(project_id)


# ---------------------------------------------------------------------------
# Registry payloads (already normalized, as core.fetcher returns them)
# ---------------------------------------------------------------------------


@pytest.fixture
def person_record() -> dict:
    return {
        "name": "Maria da Silva",
        "birth_date": "1990-05-17",
        "mother": "Ana da Silva",
        "gender": "F",
    }


@pytest.fixture
def company_record() -> dict:
    return {
        "company_name": "Acme Comercio Ltda",
        "fantasy_name": "Acme",
        "founded_at": "2005-03-01",
        "legal_nature": "Sociedade Empresaria Limitada",
        "responsible": "Joao Souza",
        "address": {"city": "Sao Paulo", "state": "SP"},
    }
