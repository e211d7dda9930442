"""
core/taxid.py -- Login/registration identifier classification.

Brazilian tax IDs:
  CPF  (personal)     11 digits, two mod-11 check digits.
  CNPJ (organization) 14 digits, two mod-11 check digits with cyclic weights.

classify() is pure and side-effect free. Priority order is fixed: email,
CPF, CNPJ, username (contains '_'), unknown.
"""

import re
from enum import Enum

# Local part: dot-separated atoms or a quoted string. Domain: bracketed IPv4
# literal or dot-separated labels ending in a 2+ letter TLD.
_EMAIL_RE = re.compile(
    r"^(([^<>()\[\]\\.,;:\s@\"]+(\.[^<>()\[\]\\.,;:\s@\"]+)*)|(\".+\"))"
    r"@((\[[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\])|(([a-zA-Z\-0-9]+\.)+[a-zA-Z]{2,}))$"
)
_NON_DIGIT_RE = re.compile(r"\D")

_CPF_LENGTH = 11
_CPF_SENTINEL = "0" * _CPF_LENGTH
_CNPJ_LENGTH = 14
_CNPJ_WEIGHTS_1 = (5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)
_CNPJ_WEIGHTS_2 = (6,) + _CNPJ_WEIGHTS_1


class IdentifierKind(str, Enum):
    EMAIL = "email"
    PERSONAL_TAX_ID = "cpf"
    ORGANIZATION_TAX_ID = "cnpj"
    USERNAME = "username"
    UNKNOWN = "unknown"


def normalize_tax_id(value: str) -> str:
    """Strip every non-digit character: '111.444.777-35' -> '11144477735'."""
    return _NON_DIGIT_RE.sub("", value or "")


def is_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(str(value).lower()))


def _cpf_check_digit(digits: str, weight_start: int) -> int:
    total = sum(int(d) * w for d, w in zip(digits, range(weight_start, 1, -1)))
    remainder = (total * 10) % 11
    return 0 if remainder == 10 else remainder


def is_valid_cpf(value: str) -> bool:
    """Validate a digits-only CPF.

    Only the all-zero sentinel is rejected outright; other repeated-digit
    strings are judged by the checksum alone.
    """
    if value == _CPF_SENTINEL or len(value) != _CPF_LENGTH or not value.isdigit():
        return False
    if _cpf_check_digit(value[:9], 10) != int(value[9]):
        return False
    return _cpf_check_digit(value[:10], 11) == int(value[10])


def _cnpj_check_digit(digits: str, weights: tuple[int, ...]) -> int:
    remainder = sum(int(d) * w for d, w in zip(digits, weights)) % 11
    return 0 if remainder < 2 else 11 - remainder


def is_valid_cnpj(value: str) -> bool:
    """Validate a digits-only CNPJ. All-equal digit strings are rejected."""
    if len(value) != _CNPJ_LENGTH or not value.isdigit() or len(set(value)) == 1:
        return False
    if _cnpj_check_digit(value[:12], _CNPJ_WEIGHTS_1) != int(value[12]):
        return False
    return _cnpj_check_digit(value[:13], _CNPJ_WEIGHTS_2) == int(value[13])


def classify(identifier: str) -> IdentifierKind:
    """Classify a login/registration identifier."""
    if is_email(identifier):
        return IdentifierKind.EMAIL
    digits = normalize_tax_id(identifier)
    if is_valid_cpf(digits):
        return IdentifierKind.PERSONAL_TAX_ID
    if is_valid_cnpj(digits):
        return IdentifierKind.ORGANIZATION_TAX_ID
    if "_" in identifier:
        return IdentifierKind.USERNAME
    return IdentifierKind.UNKNOWN
