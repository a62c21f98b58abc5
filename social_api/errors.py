"""
Error taxonomy for the OAuth flow and token lifecycle.
Routes map these to HTTP responses; core code raises them and never swallows them.
"""


class SocialAuthError(Exception):
    """Base class for all errors raised by social_api."""


class ConfigurationError(SocialAuthError):
    """Client id/secret, redirect URI or scopes missing. Never retried."""


class UnsupportedPlatformError(SocialAuthError):
    pass


class ProviderError(SocialAuthError):
    """
    Non-success response (or transport failure) from the provider.
    status_code is None when no HTTP response was received (timeout, connection error).
    body keeps the raw provider error text for diagnostics.
    """

    def __init__(self, message: str, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class TokenExchangeError(ProviderError):
    """Authorization code exchange failed. Codes are single-use: never retry."""


class TokenRefreshError(ProviderError):
    """Refresh grant failed. The refresh manager decides permanent vs transient."""


class ProfileFetchError(ProviderError):
    pass


class ProviderRequestError(ProviderError):
    """Authenticated API call (tweets, metrics) failed."""


class AccountNotFoundError(SocialAuthError):
    pass


class AccountInactiveError(SocialAuthError):
    """Account was deactivated; the user must re-authenticate."""


class ReauthenticationRequiredError(SocialAuthError):
    """Refresh is permanently impossible; the account has been deactivated."""


class RefreshFailedError(SocialAuthError):
    """Every refresh attempt failed with a transient error."""

    def __init__(self, message: str, last_error: Exception | None = None):
        super().__init__(message)
        self.last_error = last_error
