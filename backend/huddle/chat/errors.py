"""Error taxonomy for the chat core.

None of these errors are fatal to the process. Handlers in
:class:`~huddle.chat.core.ChatCore` validate before they mutate, so a raised
error always means nothing was applied.

    - ValidationError: a required field is missing or empty. The event is
      dropped and the sender gets an ``error`` frame.
    - NotFoundError: the target room, recipient or thread cannot be
      resolved. The operation is a logged no-op.
    - AuthenticationError: the identity provider rejected a token. The
      connection continues unauthenticated.
"""


class ChatError(Exception):
    """Base class for all chat core errors."""


class ValidationError(ChatError):
    """A required field is missing, blank or malformed."""


class NotFoundError(ChatError):
    """A room, recipient or thread could not be resolved."""


class AuthenticationError(ChatError):
    """The identity provider rejected a token."""
