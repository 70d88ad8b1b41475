"""Tests for FastAPI server endpoints: operations, credentials and probes."""

import sys
from pathlib import Path

from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import seace_etl.server as server_module
from conftest import FakeClientFactory
from seace_etl.categorizer import Category
from seace_etl.models import CategoryDecision, OperationKind
from seace_etl.store import MemoryStateStore

SECRET = "AIzaSyD-super-secret-value-1234"


def _make_test_client(monkeypatch, settings, responder=None, **overrides):
    """Create a test client with an isolated runtime and no environment keys."""
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    factory = FakeClientFactory(responder or (lambda alias, model, prompt: CategoryDecision(categoria="OTROS")))
    runtime = server_module.configure_runtime(
        settings, client_factory=factory, store=MemoryStateStore(), **overrides
    )
    return TestClient(server_module.app), runtime, factory


def test_health_check(monkeypatch, settings):
    """Health endpoint should be available for probes."""
    client, _, _ = _make_test_client(monkeypatch, settings)
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.headers.get("x-request-id")


def test_request_id_is_propagated(monkeypatch, settings):
    client, _, _ = _make_test_client(monkeypatch, settings)
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["x-request-id"] == "req-123"


def test_readiness_check_reports_storage_and_credentials(monkeypatch, settings):
    client, runtime, _ = _make_test_client(monkeypatch, settings)
    response = client.get("/health/ready")
    assert response.status_code == 200
    checks = response.json()["checks"]
    assert checks["state_store"]["ok"] is True
    assert checks["records"]["count"] == 0
    assert checks["credentials"] == {"ok": False, "total": 0, "active": 0}


def test_reaper_status_when_disabled(monkeypatch, settings):
    client, _, _ = _make_test_client(monkeypatch, settings)
    assert client.get("/reaper/status").json() == {"enabled": False}


def test_environment_key_seeds_empty_pool(monkeypatch, settings):
    monkeypatch.setenv("GEMINI_API_KEY", SECRET)
    server_module.configure_runtime(settings, store=MemoryStateStore())
    client = TestClient(server_module.app)

    listed = client.get("/credentials").json()
    assert [c["alias"] for c in listed] == ["System Key"]
    assert SECRET not in client.get("/credentials").text


def test_categorize_end_to_end(monkeypatch, settings, make_record):
    """Three records, one key, two-category catalog: distribution and final snapshot."""
    catalog = {"Servicio": Category("Servicio", "Servicio"), "Obra": Category("Obra", "Obra")}

    def _respond(alias, model, prompt):
        return CategoryDecision(categoria="Obra" if "pistas y veredas" in prompt else "Servicio")

    client, runtime, factory = _make_test_client(monkeypatch, settings, _respond, catalog=catalog)
    runtime.records.upsert(make_record("P-1"))
    runtime.records.upsert(make_record("P-2", descripcion_objeto="Servicio de limpieza de locales municipales"))
    runtime.records.upsert(make_record("P-3", objeto_contratacion="Obra",
                                       descripcion_objeto="Mejoramiento de pistas y veredas del centro historico"))

    created = client.post("/credentials", json={"alias": "K1", "secret": SECRET})
    assert created.status_code == 201

    started = client.post("/operations/categorize", json={})
    assert started.status_code == 200
    body = started.json()
    assert body["status"] == "completed"

    response = client.get(f"/operations/{body['operation_id']}")
    assert response.status_code == 200
    operation = response.json()
    assert operation["status"] == "completed"
    assert operation["percentage"] == 100
    assert operation["credential_alias"] == "K1"
    assert operation["details"]["distribucionCategorias"] == {"Servicio": 2, "Obra": 1}
    assert operation["details"]["updated"] == 3
    assert operation["counts"] == {"inserted": 0, "updated": 3, "errors": 0}
    assert len(factory.calls) == 3

    stats = client.get("/credentials/1/stats").json()
    assert stats["credential"]["usage_count"] == 3
    assert stats["credential"]["usage_by_kind"] == {"categorize": 3}
    assert [entry["outcome"] for entry in stats["usage"]] == ["success"] * 3


def test_operation_without_keys_fails_with_hint(monkeypatch, settings, make_record):
    client, runtime, _ = _make_test_client(monkeypatch, settings)
    runtime.records.upsert(make_record("P-1"))

    body = client.post("/operations/categorize", json={"limit": 1}).json()
    assert body["status"] == "failed"
    operation = client.get(f"/operations/{body['operation_id']}").json()
    assert operation["error_type"] == "credentials_exhausted"


def test_invalid_params_are_rejected_before_anything_runs(monkeypatch, settings):
    client, runtime, _ = _make_test_client(monkeypatch, settings)

    assert client.post("/operations/categorize", json={"limit": 0}).status_code == 422
    assert client.post("/operations/scrape", json={"anio": "20"}).status_code == 422
    assert client.post("/operations/infer_location", json={"bogus": True}).status_code == 422
    assert client.post("/operations/teleport", json={}).status_code == 422
    assert runtime.registry.list().total == 0


def test_list_and_stats(monkeypatch, settings):
    client, runtime, _ = _make_test_client(monkeypatch, settings)
    first = runtime.registry.create(OperationKind.CATEGORIZE)
    runtime.registry.create(OperationKind.SCRAPE)

    listing = client.get("/operations", params={"kind": "categorize", "size": 10}).json()
    assert listing["total"] == 1
    assert listing["items"][0]["operation_id"] == first

    stats = client.get("/operations/stats").json()
    assert stats["total"] == 2
    assert stats["pending"] == 2

    assert client.get("/operations", params={"size": 500}).status_code == 422


def test_unknown_operation_returns_404(monkeypatch, settings):
    client, _, _ = _make_test_client(monkeypatch, settings)
    assert client.get("/operations/missing").status_code == 404
    assert client.get("/operations/missing/events").status_code == 404


def test_credentials_never_expose_raw_secret(monkeypatch, settings):
    client, _, _ = _make_test_client(monkeypatch, settings)
    created = client.post("/credentials", json={"alias": "K1", "secret": SECRET})
    assert SECRET not in created.text
    assert created.json()["masked_secret"].endswith("1234")

    for path in ("/credentials", "/credentials/1/stats"):
        assert SECRET not in client.get(path).text

    updated = client.put("/credentials/1", json={"alias": "Primary", "active": False})
    assert updated.status_code == 200
    assert updated.json()["alias"] == "Primary"
    assert updated.json()["active"] is False


def test_reorder_and_delete(monkeypatch, settings):
    client, _, _ = _make_test_client(monkeypatch, settings)
    ids = [client.post("/credentials", json={"alias": f"K{i}", "secret": f"{SECRET}{i}"}).json()["id"]
           for i in range(3)]

    reordered = client.post("/credentials/reorder", json={"orderedIds": [ids[2], ids[0], ids[1]]})
    assert reordered.status_code == 200
    assert [c["alias"] for c in reordered.json()] == ["K2", "K0", "K1"]
    assert [c["priority"] for c in reordered.json()] == [0, 1, 2]

    bad = client.post("/credentials/reorder", json={"ordered_ids": [ids[0], ids[0], ids[1]]})
    assert bad.status_code == 400

    assert client.delete(f"/credentials/{ids[1]}").json() == {"status": "deleted", "id": ids[1]}
    assert client.delete(f"/credentials/{ids[1]}").status_code == 404
    assert [c["priority"] for c in client.get("/credentials").json()] == [0, 1]


def test_reset_lifts_quota_block(monkeypatch, settings):
    client, runtime, _ = _make_test_client(monkeypatch, settings)
    view = runtime.pool.add("K1", SECRET)
    runtime.pool.report_quota_exceeded(view.id, kind="categorize", message="429")

    assert client.get("/credentials").json()[0]["quota_exceeded"] is True
    reset = client.post(f"/credentials/{view.id}/reset").json()
    assert reset["quota_exceeded"] is False
    assert reset["error_count"] == 0
