"""Typed failures surfaced by the email cache."""


class MailCacheError(Exception):
    """Base exception for all email cache errors."""

    user_message = "An error occurred"

    def __init__(self, message=None, details=None):
        self.message = message or self.user_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(MailCacheError):
    user_message = "Invalid configuration"


class InvalidInputError(MailCacheError, ValueError):
    """Bad caller input: malformed dates, missing identifiers."""

    user_message = "Invalid input"


class NotFoundError(MailCacheError, LookupError):
    """An identifier did not resolve to anything. Distinct from an empty result."""

    user_message = "Not found"


class AccountNotFoundError(NotFoundError):
    def __init__(self, name, details=None):
        self.name = name
        super().__init__(f"account not found: {name}", details or {"account": name})


class FolderNotFoundError(NotFoundError):
    def __init__(self, account, path, details=None):
        self.account = account
        self.path = path
        super().__init__(f"folder not found: {account}/{path}", details or {"account": account, "folder": path})


class EmailNotFoundError(NotFoundError):
    def __init__(self, email_id, details=None):
        self.email_id = email_id
        super().__init__(f"email not found: {email_id}", details or {"email_id": email_id})


class ImapConnectionError(MailCacheError):
    """Remote host unreachable or credentials rejected."""

    user_message = "Could not connect to the IMAP server"


class ImapConnectionLostError(ImapConnectionError):
    """An established session died mid-command. The next call reconnects."""

    user_message = "IMAP connection lost"


class ImapCommandError(MailCacheError):
    """The server answered a command with something other than OK."""

    user_message = "IMAP command failed"
