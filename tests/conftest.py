"""Pytest configuration and fixtures for seace-etl tests."""

import pytest
import sys
from pathlib import Path

import httpx
import openai

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from seace_etl.config import Settings
from seace_etl.credentials import CredentialPool
from seace_etl.models import ProcessRecord
from seace_etl.operations import OperationRegistry
from seace_etl.records import RecordStore
from seace_etl.store import MemoryStateStore


class FakeLLMClient:
    """Stands in for LLMClient; answers come from a responder callable."""

    def __init__(self, alias, responder, calls):
        self.alias = alias
        self._responder = responder
        self._calls = calls

    def generate(self, response_model, system_prompt, user_prompt, **kwargs):
        self._calls.append((self.alias, response_model.__name__, user_prompt))
        return self._responder(self.alias, response_model, user_prompt)


class FakeClientFactory:
    """Builds FakeLLMClient instances and records every call made through them."""

    def __init__(self, responder):
        self.responder = responder
        self.calls = []

    def __call__(self, credential):
        return FakeLLMClient(credential.alias, self.responder, self.calls)

    def calls_for(self, model_name):
        return [call for call in self.calls if call[1] == model_name]


def provider_error(status_code: int, message: str = "error") -> openai.APIStatusError:
    """Build the openai exception the SDK raises for a given HTTP status."""
    request = httpx.Request("POST", "https://generativelanguage.googleapis.com/v1beta/openai/chat/completions")
    response = httpx.Response(status_code, request=request)
    error_classes = {
        401: openai.AuthenticationError,
        403: openai.PermissionDeniedError,
        429: openai.RateLimitError,
        500: openai.InternalServerError,
        400: openai.BadRequestError,
    }
    error_class = error_classes.get(status_code, openai.APIStatusError)
    return error_class(message, response=response, body=None)


@pytest.fixture
def settings(tmp_path):
    """Synchronous settings with isolated storage and no real backoff."""
    return Settings(
        execute_async=False,
        retry_backoff_base=0.0,
        retry_backoff_max=0.0,
        state_store_backend="memory",
        state_store_path=tmp_path / "state.json",
        state_store_sqlite_path=tmp_path / "state.db",
        records_db_path=tmp_path / "procesos.db",
    )


@pytest.fixture
def state_store():
    return MemoryStateStore()


@pytest.fixture
def registry(state_store):
    return OperationRegistry(store=state_store)


@pytest.fixture
def pool(state_store):
    return CredentialPool(store=state_store)


@pytest.fixture
def records(tmp_path):
    return RecordStore(tmp_path / "procesos.db")


@pytest.fixture
def make_record():
    """Factory for process records with sensible defaults."""
    def _make(id_proceso: str, **fields) -> ProcessRecord:
        data = {
            "nombre_entidad": "MUNICIPALIDAD PROVINCIAL DE AREQUIPA",
            "fecha_publicacion": "2025-03-10",
            "objeto_contratacion": "Servicio",
            "descripcion_objeto": "Servicio de mantenimiento de areas verdes",
        }
        data.update(fields)
        return ProcessRecord(id_proceso=id_proceso, **data)
    return _make
