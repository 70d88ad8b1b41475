
import sys
from pathlib import Path

import pytest
from unittest.mock import MagicMock, patch

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from conftest import provider_error
from seace_etl.config import GOOGLE_OPENAI_BASE_URL
from seace_etl.llm import LLMClient, ProviderErrorKind, classify_provider_error, get_client
from seace_etl.models import CategoryDecision


@patch("seace_etl.llm.OpenAI")
@patch("seace_etl.llm.instructor.from_openai")
def test_llm_client_init_google(mock_instructor, mock_openai):
    client = LLMClient(provider="google", api_key="key-123")
    mock_openai.assert_called_once_with(base_url=GOOGLE_OPENAI_BASE_URL, api_key="key-123")
    mock_instructor.assert_called_once()
    assert client.model == "gemini-2.5-flash"


@patch("seace_etl.llm.OpenAI")
@patch("seace_etl.llm.instructor.from_openai")
def test_generate_passes_structured_request(mock_instructor, mock_openai):
    structured = MagicMock()
    structured.chat.completions.create.return_value = CategoryDecision(categoria="SALUD")
    mock_instructor.return_value = structured

    client = get_client(api_key="key-123", model="gemini-2.5-flash-lite")
    result = client.generate(CategoryDecision, "system", "user")

    assert result.categoria == "SALUD"
    kwargs = structured.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "gemini-2.5-flash-lite"
    assert kwargs["response_model"] is CategoryDecision
    assert kwargs["messages"][1] == {"role": "user", "content": "user"}


def test_llm_client_rejects_unknown_provider_and_missing_key():
    with pytest.raises(ValueError):
        LLMClient(provider="openai", api_key="key")
    with pytest.raises(ValueError):
        LLMClient(provider="google", api_key="")


@pytest.mark.parametrize(
    "status,message,expected",
    [
        (429, "Too many requests", ProviderErrorKind.QUOTA),
        (401, "API key not valid", ProviderErrorKind.AUTH),
        (403, "Permission denied", ProviderErrorKind.AUTH),
        (500, "Internal error", ProviderErrorKind.TRANSIENT),
        (400, "Invalid argument", ProviderErrorKind.FATAL),
        (400, "RESOURCE_EXHAUSTED: quota for model", ProviderErrorKind.QUOTA),
    ],
)
def test_classify_provider_error(status, message, expected):
    assert classify_provider_error(provider_error(status, message)) == expected


def test_classify_looks_through_wrapping_exceptions():
    try:
        try:
            raise provider_error(429, "quota")
        except Exception as inner:
            raise RuntimeError("retry wrapper gave up") from inner
    except RuntimeError as outer:
        assert classify_provider_error(outer) == ProviderErrorKind.QUOTA


def test_classify_plain_errors():
    assert classify_provider_error(TimeoutError("slow")) == ProviderErrorKind.TRANSIENT
    assert classify_provider_error(ValueError("Quota exceeded for project")) == ProviderErrorKind.QUOTA
    assert classify_provider_error(ValueError("bad json")) == ProviderErrorKind.FATAL
