"""Exception hierarchy for sfsync"""
from typing import Optional


class SyncError(Exception):
    """Base class for all sfsync errors"""


class SalesforceApiError(SyncError):
    """Transport-level failure returned by a Salesforce endpoint

    ``error_code`` holds the platform code (``INVALID_SESSION_ID``,
    ``MALFORMED_QUERY``...) when the response carried one; it is also part
    of the message so callers matching on text keep working.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, error_code: Optional[str] = None):
        self.status_code = status_code
        self.error_code = error_code
        if error_code and error_code not in message:
            message = f"{error_code}: {message}"
        super().__init__(message)

    @property
    def is_session_expired(self) -> bool:
        return "INVALID_SESSION_ID" in str(self)


class AuthenticationError(SyncError):
    """Login or token refresh failed"""


class SessionNotFoundError(SyncError):
    """The project has never been authorized"""


class ProjectNotFoundError(SyncError):
    """config.json is missing or names no such project"""


class PackageError(SyncError):
    """A local file or manifest cannot be turned into a metadata package"""
