"""Messaging error taxonomy."""


class MessagingError(Exception):
    """Base class for errors scoped to a single user action."""

    status_code: int = 400
    retryable: bool = False

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.__class__.__doc__ or self.__class__.__name__
        super().__init__(self.detail)

    @property
    def code(self) -> str:
        return self.__class__.__name__


class NotAuthenticated(MessagingError):
    """No verified caller identity."""

    status_code = 401


class InvalidTarget(MessagingError):
    """Cannot start a conversation with yourself."""

    status_code = 400


class EmptyMessage(MessagingError):
    """Message content is empty."""

    status_code = 422


class NotParticipant(MessagingError):
    """User is not a participant in this conversation."""

    status_code = 403


class ConversationNotFound(MessagingError):
    """Conversation not found."""

    status_code = 404


class TransientNetworkError(MessagingError):
    """Datastore round-trip failed."""

    status_code = 503
    retryable = True


class ConversationConflict(Exception):
    """Insert lost a uniqueness race; the winning row already exists.

    Raised by datastores, never surfaced to callers.
    """
