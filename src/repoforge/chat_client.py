"""Chat-completion client for OpenAI-compatible APIs.

This module talks to any endpoint implementing the OpenAI
/chat/completions contract (OpenAI, OpenRouter, Gemini's compatibility
layer, local servers) and is the model collaborator of the pipeline.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from typing import Any, Dict, Iterable, List, Optional

import requests

from .config import DEFAULT_BASE_URL, DEFAULT_MODEL, DEFAULT_TEMPERATURE, DEFAULT_TIMEOUT
from .errors import ExternalServiceFailure

logger = logging.getLogger(__name__)

# Patterns for sensitive data that should be masked in error messages
SENSITIVE_PATTERNS = [
    (re.compile(r'(Bearer\s+)[A-Za-z0-9_.-]+', re.IGNORECASE), r'\1[REDACTED]'),
    (re.compile(r'(api[_-]?key["\s:=]+)[A-Za-z0-9_-]+', re.IGNORECASE), r'\1[REDACTED]'),
    (re.compile(r'(sk-)[A-Za-z0-9_-]+'), r'\1[REDACTED]'),
]


class ChatClientError(ExternalServiceFailure):
    """Exception raised for chat-completion API errors."""

    pass


class ChatRateLimitError(ChatClientError):
    """Exception raised when the API rate limit is exceeded."""

    pass


def sanitize_error(message: str) -> str:
    """Mask API keys and bearer tokens in an error message."""
    result = message
    for pattern, replacement in SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def completions_url(base_url: Optional[str]) -> str:
    """Build the chat completions endpoint from a base URL."""
    base = (base_url or DEFAULT_BASE_URL).rstrip("/")
    if base.endswith("/chat/completions"):
        return base
    return f"{base}/chat/completions"


def query_chat_completion(
    messages: List[Dict[str, Any]],
    api_key: str,
    model: str = DEFAULT_MODEL,
    temperature: float = DEFAULT_TEMPERATURE,
    max_tokens: Optional[int] = None,
    timeout: int = DEFAULT_TIMEOUT,
    base_url: Optional[str] = None,
) -> str:
    """Send a chat completion request and return the assistant text.

    Args:
        messages: List of message dicts with 'role' and 'content' keys.
        api_key: API key sent as a bearer token.
        model: Model name (default: gpt-4).
        temperature: Sampling temperature (default: 0.2).
        max_tokens: Optional cap on response tokens.
        timeout: Request timeout in seconds (default: 120).
        base_url: API base URL (default: the OpenAI API).

    Returns:
        The content of the assistant's response.

    Raises:
        ChatClientError: If the request fails or the response is unusable.
        ChatRateLimitError: If the API rate limit is exceeded.
    """
    if not api_key:
        raise ChatClientError("API key is required for chat completion requests")

    url = completions_url(base_url)
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }
    payload: Dict[str, Any] = {
        "model": model,
        "messages": messages,
        "temperature": temperature,
    }
    if max_tokens:
        payload["max_tokens"] = max_tokens

    logger.debug(f"Querying {url} with model={model}, temp={temperature}")

    try:
        response = requests.post(url, json=payload, headers=headers, timeout=timeout)
    except requests.Timeout as exc:
        raise ChatClientError(
            f"Chat completion request timed out after {timeout} seconds"
        ) from exc
    except requests.ConnectionError as exc:
        raise ChatClientError(
            sanitize_error(f"Failed to connect to {url}: {exc}")
        ) from exc
    except requests.RequestException as exc:
        raise ChatClientError(
            sanitize_error(f"Chat completion request failed: {exc}")
        ) from exc

    # Handle rate limiting
    if response.status_code == 429:
        retry_after = response.headers.get("Retry-After", "unknown")
        raise ChatRateLimitError(
            f"Rate limit exceeded (HTTP 429). Retry after: {retry_after}",
            details={"retry_after": retry_after},
        )

    # Handle other errors
    if not response.ok:
        try:
            error_data = response.json()
            error_detail = error_data.get("error", {}).get("message", response.text)
        except (ValueError, AttributeError):
            error_detail = response.text[:500]

        raise ChatClientError(
            sanitize_error(f"Chat completion error {response.status_code}: {error_detail}"),
            details={"status_code": response.status_code},
        )

    # Parse response
    try:
        data = response.json()
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError, ValueError) as exc:
        raise ChatClientError(
            f"Unexpected chat completion response format: {exc}"
        ) from exc

    usage = data.get("usage") or {}
    if usage:
        logger.debug(
            f"Token usage: {usage.get('prompt_tokens', 0)} input, "
            f"{usage.get('completion_tokens', 0)} output"
        )

    if not content or not str(content).strip():
        raise ChatClientError("Model returned an empty response")

    return content


class ChatClient:
    """Client wrapper with configurable defaults.

    The pipeline only needs complete(); query() is the lower-level call.
    """

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: Optional[int] = None,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        """Initialize the chat client.

        Args:
            api_key: API key for the service.
            base_url: API base URL. Defaults to the OpenAI API.
            model: Default model to use.
            temperature: Default sampling temperature.
            max_tokens: Default maximum tokens in response.
            timeout: Default request timeout in seconds.
        """
        self.api_key = api_key
        self.base_url = base_url or DEFAULT_BASE_URL
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout

    def query(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Query the API with a full message list."""
        return query_chat_completion(
            messages=messages,
            api_key=self.api_key,
            model=model or self.model,
            temperature=temperature if temperature is not None else self.temperature,
            max_tokens=self.max_tokens,
            timeout=self.timeout,
            base_url=self.base_url,
        )

    def complete(
        self,
        prompt: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Send one user-role message and return the completion text."""
        return self.query(
            [{"role": "user", "content": prompt}],
            model=model,
            temperature=temperature,
        )


class MockChatClient:
    """Mock chat client for testing without API calls.

    Responses are returned in the order they were queued.
    """

    def __init__(self, responses: Optional[Iterable[str]] = None):
        """Initialize the mock client."""
        self.responses: deque[str] = deque(responses or [])
        self.call_count = 0
        self.prompts: List[str] = []
        self.models: List[Optional[str]] = []
        self.should_fail: bool = False
        self.fail_error: str = "Mock failure"

    def queue(self, *responses: str) -> None:
        """Add responses to return from later calls."""
        self.responses.extend(responses)

    def complete(
        self,
        prompt: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Record the prompt and return the next queued response.

        Raises:
            ChatClientError: If should_fail is True or nothing is queued.
        """
        self.call_count += 1
        self.prompts.append(prompt)
        self.models.append(model)

        if self.should_fail:
            raise ChatClientError(self.fail_error)
        if not self.responses:
            raise ChatClientError("Model returned an empty response")
        return self.responses.popleft()
