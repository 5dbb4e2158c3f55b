"""Tests for the HTTP service, through FastAPI's TestClient."""

import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from id_nodes.core.config import Settings
from id_nodes.core.errors import StorageUnavailable
from id_nodes.graph.backend import PropertyGraph
from id_nodes.nodes.catalog import install_catalog, parse_catalog
from main import create_app

EXAMPLE_CATALOG = str(Path(__file__).resolve().parent.parent / "catalog.example.json")

SNUCSE, UNDERGRAD, GRADUATE, MAIL, SERVER, APP_DEVELOPER = 0, 1, 2, 3, 6, 8


# ============================================================
# Helpers
# ============================================================

@pytest.fixture
def client():
    app = create_app(Settings(catalog_path=EXAMPLE_CATALOG), graph=PropertyGraph())
    with TestClient(app) as c:
        c.post("/users", json={"user_id": 1,
                               "record": {"name": "kim", "student_id": "2020-12345"},
                               "verified_emails": ["kim@snu.ac.kr"]})
        c.post("/users", json={"user_id": 2, "record": {"name": "lee"}})
        yield c


def error_code(resp) -> str:
    return resp.json()["detail"]["error"]


# ============================================================
# Health and catalog
# ============================================================

def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["nodes"] == 9
    assert client.get("/").json()["backend"] == "memory"
    print("  ✓ health")


def test_nodes(client):
    nodes = client.get("/nodes").json()["nodes"]
    assert [n["name"] for n in nodes][:3] == ["snucse", "undergraduate", "graduate"]
    undergrad = client.get(f"/nodes/{UNDERGRAD}").json()
    assert undergrad["conflicts"] == [GRADUATE]
    assert client.get("/nodes/99").status_code == 404
    print("  ✓ nodes")


def test_validate_graph(client):
    body = client.get("/graph/validate").json()
    assert body["ok"] is True
    assert body["violations"] == []
    print("  ✓ validate_graph")


def test_graph_reload_then_refresh(client):
    client.post("/users/1/grants", json={"node_id": UNDERGRAD})
    data = json.loads(Path(EXAMPLE_CATALOG).read_text(encoding="utf-8"))
    for node in data["nodes"]:
        if node["name"] == "undergraduate":
            node["implies"] = node["implies"] + ["server"]
    install_catalog(client.app.state.graph, parse_catalog(data))

    assert SERVER not in client.post("/users/1/refresh").json()["valid"]
    resp = client.post("/graph/reload")
    assert resp.status_code == 200
    assert resp.json()["version"] == 1
    assert client.post("/users/1/refresh").json()["valid"] == \
        [SNUCSE, UNDERGRAD, MAIL, SERVER, APP_DEVELOPER]
    assert client.get(f"/nodes/{UNDERGRAD}").json()["implies"] == [SNUCSE, SERVER]
    print("  ✓ graph_reload_then_refresh")


def test_terms(client):
    terms = client.get("/terms").json()["terms"]
    assert len(terms) == 8
    assert terms[0]["name"] == "privacy-policy"
    print("  ✓ terms")


# ============================================================
# Grants
# ============================================================

def test_grant_and_valid_set(client):
    resp = client.post("/users/1/grants", json={"node_id": UNDERGRAD, "granted_by": "admin"})
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["grant"]["state"] == "approved"
    # app-developer follows from snucse alone
    assert body["valid"] == [SNUCSE, UNDERGRAD, MAIL, APP_DEVELOPER]

    valid = client.get("/users/1/valid").json()["valid"]
    assert [row["node_id"] for row in valid] == [SNUCSE, UNDERGRAD, MAIL, APP_DEVELOPER]
    assert valid[1] == {"node_id": UNDERGRAD, "term_ok": True, "term_semi": True}
    assert valid[0]["term_ok"] is False

    user = client.get("/users/1").json()
    assert user["locked_fields"] == ["users.student_id"]
    print("  ✓ grant_and_valid_set")


def test_grant_errors_map_to_status(client):
    assert client.post("/users/2/grants", json={"node_id": UNDERGRAD}).status_code == 422
    resp = client.post("/users/1/grants", json={"node_id": 99})
    assert resp.status_code == 404
    assert error_code(resp) == "E_NOT_FOUND"
    assert client.delete(f"/users/1/grants/{UNDERGRAD}").status_code == 404
    print("  ✓ grant_errors_map_to_status")


def test_conflict_auto_revoke(client):
    client.post("/users/1/grants", json={"node_id": UNDERGRAD})
    body = client.post("/users/1/grants", json={"node_id": GRADUATE}).json()
    assert body["revoked"] == [UNDERGRAD]
    grants = client.get("/users/1/grants").json()["grants"]
    assert [g["node_id"] for g in grants] == [GRADUATE]
    print("  ✓ conflict_auto_revoke")


def test_locked_field_update(client):
    client.post("/users/1/grants", json={"node_id": UNDERGRAD})
    resp = client.put("/users/1/fields", json={"column": "student_id", "value": "x"})
    assert resp.status_code == 409
    assert error_code(resp) == "E_LOCKED"
    client.delete(f"/users/1/grants/{UNDERGRAD}")
    assert client.put("/users/1/fields", json={"column": "student_id", "value": "x"}).status_code == 200
    print("  ✓ locked_field_update")


def test_request_and_approve(client):
    resp = client.post("/users/1/requests", json={"node_id": UNDERGRAD})
    assert resp.json()["grant"]["state"] == "requested"
    assert client.get("/users/1/valid").json()["valid"] == []
    resp = client.post(f"/users/1/requests/{UNDERGRAD}/approve", json={})
    assert resp.status_code == 200
    assert UNDERGRAD in resp.json()["valid"]
    print("  ✓ request_and_approve")


def test_mask_endpoints(client):
    client.post("/users/1/grants", json={"node_id": UNDERGRAD})
    assert client.post("/users/1/masks", json={"node_id": MAIL}).json()["valid"] == \
        [SNUCSE, UNDERGRAD, APP_DEVELOPER]
    closure = client.get("/users/1/closure").json()
    assert closure["masked"] == [MAIL]
    assert MAIL in closure["associated"]
    assert client.delete(f"/users/1/masks/{MAIL}").status_code == 200
    assert client.delete(f"/users/1/masks/{MAIL}").status_code == 404
    print("  ✓ mask_endpoints")


def test_term_endpoints(client):
    client.post("/users/1/grants", json={"node_id": UNDERGRAD})
    resp = client.post("/users/1/terms", json={"term_id": 2, "revision": 5, "status": "ok"})
    assert resp.status_code == 409
    assert error_code(resp) == "E_STALE"
    # mail is acknowledged only through snucse, which needs terms 0 and 1
    for term_id in (0, 1):
        assert client.post("/users/1/terms",
                           json={"term_id": term_id, "revision": 0, "status": "ok"}).status_code == 200
    assert client.post("/users/1/terms",
                       json={"term_id": 2, "revision": 0, "status": "ok"}).status_code == 200
    assert client.get("/users/1/terms").json()["terms"]["2"] == "ok"
    mail = [r for r in client.get("/users/1/valid").json()["valid"] if r["node_id"] == MAIL]
    assert mail[0]["term_ok"] is True
    assert client.post("/users/1/terms",
                       json={"term_id": 2, "revision": 0, "status": "maybe"}).status_code == 422
    print("  ✓ term_endpoints")


def test_enrollment_endpoints(client):
    resp = client.post("/classes", json={"class_id": 10, "name": "Operating Systems",
                                         "record": {"semester": "2024-1"}, "implies": [4]})
    assert resp.status_code == 200
    assert client.post("/users/2/enrollments",
                       json={"class_id": 10, "record": {"grade": "2"}}).json()["valid"] == [4, 5]
    assert client.delete("/users/2/enrollments/10").json()["valid"] == []
    print("  ✓ enrollment_endpoints")


# ============================================================
# Reserved names, sweep, audit
# ============================================================

def test_reserved_names(client):
    assert client.post("/reserved", json={"name": ""}).status_code == 400
    assert client.post("/hosts", json={"name": "ftp"}).status_code == 200
    resp = client.post("/reserved", json={"name": "ftp"})
    assert resp.status_code == 409
    assert error_code(resp) == "E_DUPLICATE"
    assert client.post("/reserved", json={"name": "root"}).status_code == 200
    assert client.get("/reserved/root").json()["reserved"] is True
    assert client.get("/reserved").json()["names"] == ["root"]
    assert client.delete("/reserved/root").status_code == 200
    assert client.delete("/reserved/root").status_code == 404
    print("  ✓ reserved_names")


def test_sweep_and_audit(client):
    client.post("/users/1/grants", json={"node_id": UNDERGRAD, "expires_at": 4_102_444_800_000})
    swept = client.post("/admin/sweep", json={"now": 4_102_444_800_001}).json()["swept"]
    assert swept == {"1": [UNDERGRAD]}
    entries = client.get("/audit", params={"user_id": 1}).json()["entries"]
    assert [e["action"] for e in entries] == ["grant", "expire"]
    assert client.get("/audit/verify").json() == {"valid": True, "length": 2}
    print("  ✓ sweep_and_audit")


def test_storage_unavailable_is_503(client):
    def down(*args, **kwargs):
        raise StorageUnavailable("FalkorDB unavailable after 3 attempts")
    client.app.state.workflow.grant = down
    resp = client.post("/users/1/grants", json={"node_id": UNDERGRAD})
    assert resp.status_code == 503
    assert resp.json()["error"] == "STORAGE_UNAVAILABLE"
    print("  ✓ storage_unavailable_is_503")
