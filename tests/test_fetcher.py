"""Unit tests for core/fetcher.py -- tax-ID registry lookups.

Covers:
- Person and company payloads are normalized to snake_case keys
- The tax ID is appended to the endpoint path
- Network errors, non-JSON bodies and status=false raise UpstreamError
- An unconfigured endpoint raises without making a request
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from core.errors import UpstreamError
from core.fetcher import fetch_company, fetch_person


def _response(payload=None, json_error=False) -> MagicMock:
    resp = MagicMock()
    resp.raise_for_status.return_value = None
    if json_error:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = payload
    return resp


class TestFetchPerson:
    def test_normalizes_payload(self):
        payload = {
            "status": True,
            "name": " Maria da Silva ",
            "birthDate": "1990-05-17T00:00:00.000Z",
            "mother": "Ana da Silva",
            "gender": "F",
        }
        with patch("core.fetcher._session.get", return_value=_response(payload)) as mock_get:
            record = fetch_person("https://registry.test/cpf/", "11144477735", timeout=3)

        mock_get.assert_called_once_with("https://registry.test/cpf/11144477735", timeout=3)
        assert record == {"name": "Maria da Silva", "birth_date": "1990-05-17", "mother": "Ana da Silva", "gender": "F"}

    def test_status_false_raises(self):
        with patch("core.fetcher._session.get", return_value=_response({"status": False})):
            with pytest.raises(UpstreamError, match="not found"):
                fetch_person("https://registry.test/cpf", "11144477735")

    def test_network_error_raises(self):
        with patch("core.fetcher._session.get", side_effect=requests.ConnectionError("down")):
            with pytest.raises(UpstreamError, match="unavailable"):
                fetch_person("https://registry.test/cpf", "11144477735")

    def test_http_error_raises(self):
        resp = _response({"status": True})
        resp.raise_for_status.side_effect = requests.HTTPError("503")
        with patch("core.fetcher._session.get", return_value=resp):
            with pytest.raises(UpstreamError):
                fetch_person("https://registry.test/cpf", "11144477735")

    def test_non_json_raises(self):
        with patch("core.fetcher._session.get", return_value=_response(json_error=True)):
            with pytest.raises(UpstreamError, match="invalid response"):
                fetch_person("https://registry.test/cpf", "11144477735")

    def test_unconfigured_endpoint(self):
        with patch("core.fetcher._session.get") as mock_get:
            with pytest.raises(UpstreamError, match="not configured"):
                fetch_person("", "11144477735")
        mock_get.assert_not_called()


class TestFetchCompany:
    def test_normalizes_payload(self):
        payload = {
            "status": True,
            "companyName": "Acme Comercio Ltda",
            "fantasyName": "Acme",
            "foundedAt": "2005-03-01",
            "legalNature": "Sociedade Empresaria Limitada",
            "responsible": "Joao Souza",
            "address": {"city": "Sao Paulo"},
        }
        with patch("core.fetcher._session.get", return_value=_response(payload)):
            record = fetch_company("https://registry.test/cnpj", "11222333000181")

        assert record["company_name"] == "Acme Comercio Ltda"
        assert record["founded_at"] == "2005-03-01"
        assert record["address"] == {"city": "Sao Paulo"}

    def test_missing_address_defaults_to_empty(self):
        payload = {"status": True, "companyName": "Acme", "foundedAt": "2005-03-01"}
        with patch("core.fetcher._session.get", return_value=_response(payload)):
            assert fetch_company("https://registry.test/cnpj", "11222333000181")["address"] == {}
