"""Package specific exception hierarchy."""

from __future__ import annotations


class ChatBridgeError(Exception):
    """Base exception for chatbridge package."""


class RequestValidationError(ChatBridgeError, ValueError):
    """Raised when a request is malformed or incomplete. Never sent over the network."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Invalid chat request: " + "; ".join(errors))
        self.errors = errors


class TargetResolutionError(ChatBridgeError, ValueError):
    """Raised when a target cannot be turned into a provider/model pair."""


class UnknownProviderError(ChatBridgeError):
    """Raised when a provider id is unknown or has no registered adapter."""

    def __init__(self, provider: str, reason: str = "is not available") -> None:
        super().__init__(f"Provider '{provider}' {reason}.")
        self.provider = provider


class UnsupportedFeatureError(ChatBridgeError):
    """Raised when a requested feature is unsupported by a provider."""

    def __init__(self, feature: str, provider: str | None = None) -> None:
        where = f" by provider '{provider}'" if provider else ""
        super().__init__(f"Feature '{feature}' is not supported{where}.")
        self.feature = feature
        self.provider = provider


class TransportError(ChatBridgeError):
    """Represents non-success HTTP statuses and I/O failures."""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        suffix = f" (status {status_code})" if status_code is not None else ""
        super().__init__(f"{provider}: {message}{suffix}")
        self.provider = provider
        self.status_code = status_code
        self.body = body


class ProtocolParseError(ChatBridgeError):
    """Raised when a vendor payload does not match the expected shape."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class RequestCancelledError(ChatBridgeError):
    """Raised when the caller cancels an in-flight request."""


class ToolExecutionError(ChatBridgeError):
    """A tool handler failed or is missing. Fed back to the model, never raised to callers."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class ToolLoopExceededError(ChatBridgeError):
    """Raised when the tool loop hits its round cap without a final answer."""

    def __init__(self, max_calls: int, operation: str) -> None:
        super().__init__(f"Exceeded max tool calls ({max_calls}) during {operation}()")
        self.max_calls = max_calls
