"""
OpenRouter chat-completions client.

Wraps the OpenAI SDK pointed at OpenRouter with our own bounded retry:
HTTP 429 and 5xx responses are retried with exponential backoff and jitter,
timeouts and other failures surface immediately as VendorError subclasses.
"""

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import openai
from openai import OpenAI

from ..core.token_counter import TokenUsage

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_APP_TITLE = "AI Market Analyst"

MAX_RETRIES = 3
INITIAL_DELAY = 1.0
MAX_DELAY = 5.0


class VendorError(Exception):
    """The LLM vendor call failed; the message is safe to show to users."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class VendorTimeoutError(VendorError):
    pass


class RequestCancelled(Exception):
    """Raised when the caller cancels an in-flight request."""


@dataclass(frozen=True)
class Completion:
    content: str
    usage: Optional[TokenUsage]
    id: Optional[str] = None
    model: Optional[str] = None


def is_retryable_status(status_code: Optional[int]) -> bool:
    return status_code == 429 or (status_code is not None and 500 <= status_code < 600)


def format_status_error(status_code: int, detail: str) -> str:
    """User-facing message for an HTTP error from the vendor."""
    if status_code == 401:
        return "AI service rejected the API key (401). Check the OPENROUTER_API_KEY setting."
    if status_code == 402:
        return "AI service account has insufficient credits (402). Top up the OpenRouter account."
    if status_code == 429:
        return "AI service is rate limiting requests (429). Wait a minute and try again."
    if status_code >= 500:
        return f"AI service is temporarily unavailable ({status_code}). Please try again shortly."
    return f"AI service error ({status_code}): {detail}"


NETWORK_ERROR_MESSAGE = (
    "Could not reach the AI service. Troubleshooting steps:\n"
    "1. Check your internet connection\n"
    "2. Disable any VPN or proxy that may block openrouter.ai\n"
    "3. Try again in a few minutes"
)


class OpenRouterClient:
    """Chat-completions client for OpenRouter.

    The SDK's own retries are disabled; :meth:`complete` applies the retry
    policy so that only rate limits and server errors are retried.
    """

    def __init__(
        self,
        api_key: str,
        app_url: str = "http://localhost",
        app_title: str = DEFAULT_APP_TITLE,
        timeout: float = 60.0,
        max_retries: int = MAX_RETRIES,
        initial_delay: float = INITIAL_DELAY,
        max_delay: float = MAX_DELAY,
        sleep=time.sleep
    ):
        """Initialize the client.

        Args:
            api_key: OpenRouter API key (required)
            app_url: Sent as HTTP-Referer for OpenRouter attribution
            app_title: Sent as X-Title
            timeout: Default per-request timeout in seconds
            max_retries: Retries after the first attempt for 429/5xx
            initial_delay: First backoff delay in seconds
            max_delay: Backoff cap in seconds, before jitter

        Raises:
            ValueError: If api_key is missing/empty
        """
        if not api_key or not api_key.strip():
            raise ValueError("api_key is required and cannot be empty")

        self.timeout = timeout
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.sleep = sleep
        self.client = OpenAI(
            api_key=api_key,
            base_url=OPENROUTER_BASE_URL,
            max_retries=0,
            timeout=timeout,
            default_headers={"HTTP-Referer": app_url, "X-Title": app_title}
        )

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise RequestCancelled("Request cancelled")

    def complete(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.7,
        max_tokens: int = 4000,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> Completion:
        """Create a chat completion.

        Args:
            model: OpenRouter model id
            messages: Chat messages; user content may include image_url parts
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate
            timeout: Per-request timeout, defaults to the client timeout
            cancel_event: Set it to abandon the request between attempts

        Returns:
            Completion with the text and vendor-reported usage

        Raises:
            ValueError: If messages is empty
            VendorTimeoutError: If the vendor did not answer in time
            VendorError: For any other vendor failure or an empty response
            RequestCancelled: If cancel_event was set
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        timeout = timeout or self.timeout
        delay = self.initial_delay
        for attempt in range(self.max_retries + 1):
            self._check_cancelled(cancel_event)
            try:
                response = self.client.chat.completions.create(
                    model=model,
                    messages=messages,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    timeout=timeout
                )
                break
            except openai.APITimeoutError as e:
                logger.error("%s timed out after %ss", model, timeout)
                raise VendorTimeoutError(
                    f"The AI service did not respond within {timeout:g} seconds. "
                    "Please try again or choose a faster model."
                ) from e
            except openai.APIStatusError as e:
                if not is_retryable_status(e.status_code) or attempt == self.max_retries:
                    logger.error("%s failed with HTTP %s: %s", model, e.status_code, e.message)
                    raise VendorError(format_status_error(e.status_code, e.message), e.status_code) from e
                wait = delay + random.uniform(0, 1)
                logger.warning(
                    "%s attempt %d failed with HTTP %s. Retrying in %.1fs...",
                    model, attempt + 1, e.status_code, wait
                )
                self.sleep(wait)
                delay = min(delay * 2, self.max_delay)
            except openai.APIConnectionError as e:
                logger.error("Could not reach OpenRouter: %s", e)
                raise VendorError(NETWORK_ERROR_MESSAGE) from e

        self._check_cancelled(cancel_event)

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise VendorError(
                "The AI service returned an empty response. Please try again with a different model."
            )

        usage = TokenUsage.from_api_usage(response.usage)
        logger.debug("Completion %s from %s: usage=%s", response.id, model, usage)
        return Completion(content=content, usage=usage, id=response.id, model=model)
