from typing import Optional


class LedgerError(RuntimeError):
    """Base class for errors raised by ledger components."""

    reason = "ledger_error"


class MissingIdentityError(LedgerError):
    reason = "missing_identity"

    def __init__(self, message: str = "externalId or email is required") -> None:
        super().__init__(message)


class AmbiguousIdentityError(LedgerError):
    reason = "ambiguous_identity"

    def __init__(self, external_user_id: int, email_user_id: int) -> None:
        super().__init__(
            f"external id and email resolve to different users ({external_user_id} != {email_user_id})"
        )
        self.external_user_id = external_user_id
        self.email_user_id = email_user_id


class MessageNotFoundError(LedgerError):
    reason = "message_not_found"

    def __init__(self, message_id: int) -> None:
        super().__init__(f"Message {message_id} not found")
        self.message_id = message_id


class OwnershipError(LedgerError):
    reason = "not_owner"

    def __init__(self, user_id: int, message_id: int) -> None:
        super().__init__(f"Message {message_id} does not belong to user {user_id}")
        self.user_id = user_id
        self.message_id = message_id


class InvalidActionError(LedgerError):
    reason = "unsupported_action"

    def __init__(self, action: Optional[str], reason: Optional[str] = None) -> None:
        super().__init__(f"Unsupported message action: {action!r}")
        self.action = action
        if reason:
            self.reason = reason


class InvalidMessageError(LedgerError):
    reason = "invalid_message"


class PersistenceUnavailableError(LedgerError):
    def __init__(self, reason: str = "persistence_disabled") -> None:
        super().__init__(reason)
        self.reason = reason
