"""Custom exceptions for Mail Archiver."""


class MailArchiverError(Exception):
    """Base exception for all Mail Archiver errors."""


class ConfigurationError(MailArchiverError):
    """Exception raised for configuration related errors."""


class AuthenticationError(MailArchiverError):
    """Exception raised when the server rejects our credentials.

    Authentication failures are permanent: retrying with the same credentials
    cannot succeed, so they are never retried.
    """


class AuthorizationError(AuthenticationError):
    """Exception raised when the account may not access a resource."""


class ImapConnectionError(MailArchiverError):
    """Exception raised when the IMAP connection is lost or times out."""


class ImapProtocolError(MailArchiverError):
    """Exception raised when the server answers a command with NO or BAD."""


class ItemFetchError(MailArchiverError):
    """Exception raised when a single message cannot be retrieved."""


class IndexCorruptionError(MailArchiverError):
    """Exception raised when the index database fails its integrity check."""


class SyncCancelledError(MailArchiverError):
    """Exception raised when a sync run stops because cancellation was requested."""
