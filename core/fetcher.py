"""
fetcher.py -- External tax-ID registry lookups.

Two endpoints are configured (personal and organizational). Both take a
digits-only tax ID appended to the endpoint path and answer with JSON that
carries a boolean "status" flag plus the registry fields:

  person:  {"status": true, "name", "birthDate", "mother", "gender"}
  company: {"status": true, "companyName", "fantasyName", "foundedAt",
            "legalNature", "responsible", "address"}

Unlike a best-effort enrichment source, registration cannot proceed without
this data, so every failure surfaces as UpstreamError rather than None.
"""

import logging
from typing import Any

import requests

from core.errors import UpstreamError

logger = logging.getLogger("idprovider.fetcher")

_DEFAULT_TIMEOUT = 10

# Module-level session shared across all fetcher calls for connection pooling.
# max_redirects=3 replaces the requests default of 30; registries are known
# endpoints and long redirect chains are not expected.
_session = requests.Session()
_session.max_redirects = 3


def _fetch(endpoint: str, tax_id: str, timeout: int) -> dict[str, Any]:
    if not endpoint:
        raise UpstreamError("Registry endpoint is not configured")
    url = f"{endpoint.rstrip('/')}/{tax_id}"
    try:
        resp = _session.get(url, timeout=timeout)
        resp.raise_for_status()
        payload = resp.json()
    except requests.RequestException as e:
        logger.warning("Registry lookup failed for %s: %s", endpoint, e)
        raise UpstreamError("Tax ID registry is unavailable") from e
    except ValueError as e:
        logger.warning("Registry at %s returned a non-JSON body", endpoint)
        raise UpstreamError("Tax ID registry returned an invalid response") from e
    if not isinstance(payload, dict) or not payload.get("status"):
        raise UpstreamError("Tax ID not found in registry")
    return payload


def fetch_person(endpoint: str, cpf: str, timeout: int = _DEFAULT_TIMEOUT) -> dict[str, Any]:
    """Fetch a person's registry record by digits-only CPF.

    Returns a dict with the keys name, birth_date, mother, gender.
    Raises UpstreamError on network failure, bad payload, or status=false.
    """
    data = _fetch(endpoint, cpf, timeout)
    return {
        "name": str(data.get("name", "")).strip(),
        "birth_date": str(data.get("birthDate", ""))[:10],
        "mother": data.get("mother", ""),
        "gender": data.get("gender", ""),
    }


def fetch_company(endpoint: str, cnpj: str, timeout: int = _DEFAULT_TIMEOUT) -> dict[str, Any]:
    """Fetch a company's registry record by digits-only CNPJ."""
    data = _fetch(endpoint, cnpj, timeout)
    return {
        "company_name": str(data.get("companyName", "")).strip(),
        "fantasy_name": data.get("fantasyName", ""),
        "founded_at": str(data.get("foundedAt", ""))[:10],
        "legal_nature": data.get("legalNature", ""),
        "responsible": data.get("responsible", ""),
        "address": data.get("address") or {},
    }
