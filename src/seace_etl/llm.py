"""LLM client configuration and provider error classification."""

import logging
from enum import Enum
from typing import Type, TypeVar

import instructor
import openai
from openai import OpenAI
from pydantic import BaseModel

from .config import GOOGLE_OPENAI_BASE_URL, PROVIDER_GOOGLE, get_default_model

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

QUOTA_MARKERS = ("429", "quota", "resource_exhausted", "rate limit")


class ProviderErrorKind(str, Enum):
    """How a failed provider call should be handled by a worker."""
    QUOTA = "quota"
    AUTH = "auth"
    TRANSIENT = "transient"
    FATAL = "fatal"


class LLMClient:
    """
    Wrapper for LLM API calls using instructor for structured outputs.

    One client is bound to one pool credential; workers build a fresh client
    per acquired credential so rotation never leaks a stale key.
    """

    def __init__(self, provider: str = PROVIDER_GOOGLE, api_key: str = "", model: str | None = None):
        """
        Initialize the LLM client.

        Args:
            provider: Provider id, currently only "google"
            api_key: Secret taken from the credential pool
            model: Model name (defaults to provider's default model)
        """
        if provider != PROVIDER_GOOGLE:
            raise ValueError(f"Unknown provider: {provider}. Use 'google'")
        if not api_key:
            raise ValueError("An API key is required to build an LLM client")

        self.provider = provider
        self.model = model or get_default_model(provider)

        raw_client = OpenAI(base_url=GOOGLE_OPENAI_BASE_URL, api_key=api_key)
        self.client = instructor.from_openai(raw_client, mode=instructor.Mode.JSON)

    def generate(
        self,
        response_model: Type[T],
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.2,
        max_retries: int = 1,
        max_tokens: int = 1024,
    ) -> T:
        """
        Generate a structured response from the LLM.

        Args:
            response_model: Pydantic model for the response
            system_prompt: System message
            user_prompt: User message
            temperature: Sampling temperature
            max_retries: Number of retries for parsing failures
            max_tokens: Maximum tokens in response

        Returns:
            Parsed response as the specified Pydantic model
        """
        return self.client.chat.completions.create(
            model=self.model,
            response_model=response_model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=temperature,
            max_retries=max_retries,
            max_tokens=max_tokens,
            timeout=60.0,
        )


def get_client(provider: str = PROVIDER_GOOGLE, api_key: str = "", model: str | None = None) -> LLMClient:
    """Get an LLM client instance bound to one credential."""
    return LLMClient(provider=provider, api_key=api_key, model=model)


def _root_cause(exc: BaseException) -> BaseException:
    # instructor wraps provider failures in its own retry exception
    seen = set()
    current = exc
    while current.__cause__ is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, openai.APIError):
            break
        current = current.__cause__
    return current


def classify_provider_error(exc: BaseException) -> ProviderErrorKind:
    """Map a provider exception onto the failover policy workers apply."""
    cause = _root_cause(exc)
    message = str(cause).lower()

    if isinstance(cause, openai.RateLimitError):
        return ProviderErrorKind.QUOTA
    if isinstance(cause, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ProviderErrorKind.AUTH
    if isinstance(cause, (openai.APITimeoutError, openai.APIConnectionError, openai.InternalServerError)):
        return ProviderErrorKind.TRANSIENT
    if isinstance(cause, openai.APIStatusError):
        if cause.status_code == 429 or any(marker in message for marker in QUOTA_MARKERS):
            return ProviderErrorKind.QUOTA
        if cause.status_code in (401, 403):
            return ProviderErrorKind.AUTH
        if cause.status_code >= 500:
            return ProviderErrorKind.TRANSIENT
        return ProviderErrorKind.FATAL
    if isinstance(cause, (TimeoutError, ConnectionError)):
        return ProviderErrorKind.TRANSIENT
    if any(marker in message for marker in QUOTA_MARKERS):
        return ProviderErrorKind.QUOTA
    return ProviderErrorKind.FATAL
