"""
core/errors.py -- Typed error hierarchy for the identity provider.

Every failure the core can report is an IdentityError subclass. The
orchestrator (auth/service.py) catches IdentityError at its boundary and maps
it to the {code: 400, message} envelope, so str(err) must always be a
human-readable summary that is safe to hand back to callers.
"""


class IdentityError(Exception):
    """Base class for all expected identity-provider failures."""


class ValidationError(IdentityError):
    """Missing or malformed required field, or an invalid tax-ID checksum."""


class NotFoundError(IdentityError):
    """User, project, person, company or ACL is absent (or soft-deleted)."""


class ConflictError(IdentityError):
    """Duplicate email or tax-ID registration."""


class AuthenticationError(IdentityError):
    """Wrong password, or an invalid / expired token."""


class InvalidTokenError(AuthenticationError):
    """Token is malformed, expired, or its signature does not match."""


class SigningError(IdentityError):
    """Token could not be signed (blank secret, bad claims, bad ttl)."""


class AuthorizationError(IdentityError):
    """Project not granted, user not verified, or endpoint/method denied."""


class UpstreamError(IdentityError):
    """External tax-ID registry unreachable or returned a failure status."""


class StoreError(IdentityError):
    """Persistence collaborator failed. Message never carries driver detail."""


def check_params(required: list[str], params: dict) -> None:
    """Raise ValidationError naming the first required param that is missing or blank."""
    for name in required:
        value = params.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError(f"Param '{name}' is required.")
