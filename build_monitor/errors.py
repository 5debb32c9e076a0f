"""
Error types for GitLab Build Monitor

The aggregation engine distinguishes three kinds of failure:
- ConfigurationError: missing or malformed settings, fatal before polling starts
- AuthorizationError: GitLab rejected our credentials (HTTP 401)
- TransientFetchError: any other remote failure, retried by the next poll

Each error carries the user-facing message shown on the dashboard error channel.
"""

UNAUTHORIZED_MESSAGE = "Unauthorized Access. Please check your token."
GENERIC_FETCH_MESSAGE = (
    "Something went wrong. Make sure the configuration is ok "
    "and your Gitlab is up and running."
)
WRONG_PROJECTS_FORMAT_MESSAGE = "Wrong projects format! Try: 'namespace/project/branch'"


class MonitorError(Exception):
    """Base exception for build monitor failures"""

    default_message = GENERIC_FETCH_MESSAGE

    def __init__(self, message=None, status_code=None):
        super().__init__(message or self.default_message)
        self.status_code = status_code

    @property
    def message(self):
        return str(self)


class ConfigurationError(MonitorError):
    """Raised when required configuration is missing or malformed."""

    default_message = "Invalid configuration"


class AuthorizationError(MonitorError):
    """Raised when GitLab answers 401 for a request."""

    default_message = UNAUTHORIZED_MESSAGE


class TransientFetchError(MonitorError):
    """Raised for remote failures where the next poll may succeed."""

    default_message = GENERIC_FETCH_MESSAGE
