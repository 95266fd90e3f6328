"""Exception taxonomy for the assistant.

Only :class:`PersistenceError` escapes a turn.  The tool errors are folded
into a ``ToolCallResult`` by the dispatcher, and ``ClassifierUnavailable``
is converted into a low-confidence fallback by the classifier wrapper.
"""

from __future__ import annotations


class AssistantError(Exception):
    """Base class for every error raised by the assistant."""


class UnknownToolError(AssistantError):
    """Raised when a tool name is not present in the registry."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"unknown tool: {name}")


class ToolValidationError(AssistantError):
    """Raised when tool parameters do not match the tool's schema.

    ``field_errors`` maps each offending field to a readable message.
    """

    def __init__(self, tool: str, field_errors: dict[str, str]):
        self.tool = tool
        self.field_errors = field_errors
        details = "; ".join(f"{field}: {msg}" for field, msg in field_errors.items())
        super().__init__(f"Invalid parameters for {tool}: {details}")


class PermissionDeniedError(AssistantError):
    """Raised when a caller lacks a capability required by a tool."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class ToolExecutionError(AssistantError):
    """Raised when a tool handler fails or exceeds its timeout."""


class ClassifierUnavailable(AssistantError):
    """Raised when the intent classifier errors out or times out."""


class PersistenceError(AssistantError):
    """Raised when the conversation context could not be written.

    Fatal for the current turn; the caller is expected to retry it.
    """

    retryable = True


class ConversationNotFound(AssistantError):
    """Raised when a conversation id belongs to another tenant or assistant."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"conversation not found: {conversation_id}")
