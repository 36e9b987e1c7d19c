"""Custom exception types."""

from __future__ import annotations

from http import HTTPStatus


class ProviderUnavailableError(Exception):
    """Raised when a provider cannot satisfy the request."""

    def __init__(self, provider_name: str, message: str = "Provider unavailable") -> None:
        super().__init__(message)
        self.provider_name = provider_name
        self.message = message


class ProviderAuthError(ProviderUnavailableError):
    """Raised when the provider rejects the credential itself."""

    def __init__(self, provider_name: str, message: str = "Provider rejected the API key") -> None:
        super().__init__(provider_name, message=message)


class UpstreamRateLimitError(ProviderUnavailableError):
    """Raised after a key was demoted because the provider signalled throttling."""

    def __init__(self, provider_name: str, key_id: int, message: str = "Provider quota exhausted") -> None:
        super().__init__(provider_name, message=message)
        self.key_id = key_id


class ChatRequestError(Exception):
    """A chat request that fails before streaming starts."""

    status_code: int = HTTPStatus.BAD_REQUEST
    code: str = "invalid_request"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConversationNotFoundError(ChatRequestError):
    status_code = HTTPStatus.NOT_FOUND
    code = "conversation_not_found"

    def __init__(self, conversation_id: int) -> None:
        super().__init__("Conversation not found")
        self.conversation_id = conversation_id


class ModelUnavailableError(ChatRequestError):
    status_code = HTTPStatus.SERVICE_UNAVAILABLE
    code = "no_model_available"

    def __init__(self, message: str = "No model is available yet, please contact an administrator") -> None:
        super().__init__(message)


class NoKeyAvailableError(ChatRequestError):
    """Capacity error: no active, non-rate-limited key with headroom exists."""

    status_code = HTTPStatus.SERVICE_UNAVAILABLE
    code = "no_key_available"

    def __init__(self, provider_name: str) -> None:
        super().__init__("No API key is available right now, please try again later")
        self.provider_name = provider_name
