from __future__ import annotations

from collections.abc import Iterable


class IdentityError(Exception):
    pass


class NotFoundError(IdentityError):
    pass


class ConflictError(IdentityError):
    pass


class ForbiddenError(IdentityError):
    pass


class ValidationError(IdentityError):
    pass


class AuthenticationError(IdentityError):
    """Credential or principal failures.

    All subclasses collapse to one generic response at the HTTP boundary so a
    caller cannot tell a disabled principal from an unknown one.
    """


class InvalidToken(AuthenticationError):
    pass


class InvalidTokenType(AuthenticationError):
    pass


class PrincipalNotFound(AuthenticationError):
    pass


class InvalidCredentials(AuthenticationError):
    pass


class InsufficientPermission(IdentityError):
    def __init__(self, missing: Iterable[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"Missing permissions: {', '.join(self.missing)}")


class MissingIdentityAttribute(IdentityError):
    def __init__(self, provider: str, attribute: str) -> None:
        self.provider = provider
        self.attribute = attribute
        super().__init__(f"{provider} profile did not provide {attribute}")


class ProviderDisabled(IdentityError):
    pass


class ServiceNotFound(NotFoundError):
    pass


class ConsentNotFound(NotFoundError):
    pass


class EntitlementError(IdentityError):
    pass


class AlreadyJoined(EntitlementError):
    pass


class AlreadyConsented(EntitlementError):
    pass


class ServiceNotJoined(EntitlementError):
    pass


class MissingRequiredConsent(EntitlementError):
    def __init__(self, missing: Iterable[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"Missing required consents: {', '.join(self.missing)}")


class RequiredConsentWithdrawalDenied(EntitlementError):
    pass


class OrphanedIdentityLink(ConflictError):
    """A provider identity is linked to an account row that no longer exists."""
