"""
id_nodes API Service

FastAPI wrapper around the node privilege engine.
Connects to FalkorDB for persistent storage when IDN_BACKEND=falkordb,
otherwise keeps everything in memory.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from id_nodes.core.config import Settings, load_settings
from id_nodes.core.errors import PolicyError, PolicyResult, StorageUnavailable, StructuralGraphError
from id_nodes.core.locks import make_user_locks
from id_nodes.core.notify import make_dispatcher
from id_nodes.graph.backend import PropertyGraph
from id_nodes.graph.falkordb_backend import FalkorPropertyGraph
from id_nodes.graph.schema import VT
from id_nodes.nodes.catalog import install_catalog, load_catalog, load_node_graph
from id_nodes.nodes.terms import TermStatus
from id_nodes.nodes.workflow import NodeWorkflow
from id_nodes.users.reserved import ReservedNames

logger = logging.getLogger("id_nodes.service")

VERSION = "0.3.0"

STATUS_FOR = {
    PolicyError.E_NOT_FOUND: 404,
    PolicyError.E_CONFLICT: 409,
    PolicyError.E_DUPLICATE: 409,
    PolicyError.E_LOCKED: 409,
    PolicyError.E_STALE: 409,
    PolicyError.E_TRANSITION: 409,
    PolicyError.E_FIELDS: 422,
    PolicyError.E_EMAIL: 422,
    PolicyError.E_EMPTY: 400,
}


# ============================================================
# Startup
# ============================================================

def build_graph(settings: Settings):
    if settings.backend == "falkordb":
        return FalkorPropertyGraph.from_settings(settings)
    return PropertyGraph()


def start_services(app: FastAPI, settings: Settings, graph=None) -> None:
    """Open storage, install the catalog on an empty graph, validate it."""
    graph = graph if graph is not None else build_graph(settings)

    if not graph.get_vertices_by_type(VT.PRIVILEGE_NODE) and settings.catalog_path:
        install_catalog(graph, load_catalog(settings.catalog_path))

    node_graph = load_node_graph(graph)
    node_graph.ensure_valid()

    app.state.settings = settings
    app.state.graph = graph
    app.state.workflow = NodeWorkflow(graph, node_graph,
                                      locks=make_user_locks(settings),
                                      dispatcher=make_dispatcher(settings))
    app.state.reserved = ReservedNames(graph)

    logger.info(f"id_nodes {VERSION} on {settings.backend} backend")
    logger.info(f"  catalog: {len(node_graph)} nodes, {len(node_graph.terms)} terms")
    logger.info(f"  graph: {graph.vertex_count} vertices, {graph.edge_count} edges")


def create_app(settings: Optional[Settings] = None, graph=None) -> FastAPI:
    """App factory. Settings are resolved at startup, not at import."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        start_services(app, settings or load_settings(), graph)
        yield

    app = FastAPI(title="id_nodes", version=VERSION, lifespan=lifespan)
    app.include_router(router)

    @app.exception_handler(StorageUnavailable)
    async def storage_unavailable(request: Request, exc: StorageUnavailable):
        logger.error(f"{request.method} {request.url.path}: storage unavailable: {exc}")
        return JSONResponse(status_code=503,
                            content={"error": "STORAGE_UNAVAILABLE", "detail": str(exc)})

    return app


def get_workflow(request: Request) -> NodeWorkflow:
    return request.app.state.workflow


def get_reserved(request: Request) -> ReservedNames:
    return request.app.state.reserved


def unwrap(result: PolicyResult) -> PolicyResult:
    if not result.ok:
        raise HTTPException(STATUS_FOR[result.error],
                            {"error": result.error.value, "detail": result.error_detail})
    return result


# ============================================================
# Request Models
# ============================================================

class UserCreate(BaseModel):
    user_id: int
    record: dict[str, Any] = Field(default_factory=dict)
    verified_emails: list[str] = Field(default_factory=list)

class FieldUpdate(BaseModel):
    column: str
    value: Any = None

class EmailAdd(BaseModel):
    address: str

class ClassCreate(BaseModel):
    class_id: int
    name: str
    record: dict[str, Any] = Field(default_factory=dict)
    implies: list[int] = Field(default_factory=list)

class Enrollment(BaseModel):
    class_id: int
    record: dict[str, Any] = Field(default_factory=dict)

class GrantCreate(BaseModel):
    node_id: int
    expires_at: Optional[int] = None
    granted_by: str = ""

class GrantRequest(BaseModel):
    node_id: int

class Approval(BaseModel):
    expires_at: Optional[int] = None
    granted_by: str = ""

class MaskCreate(BaseModel):
    node_id: int
    masked_by: str = ""

class TermDecision(BaseModel):
    term_id: int
    revision: int
    status: TermStatus

class NameBody(BaseModel):
    name: str

class SweepRequest(BaseModel):
    now: Optional[int] = None


def grant_dict(grant) -> dict:
    return {
        "user_id": grant.user_id,
        "node_id": grant.node_id,
        "state": grant.state,
        "expires_at": grant.expires_at,
        "granted_at": grant.granted_at,
        "granted_by": grant.granted_by,
    }


def node_dict(node) -> dict:
    return {
        "node_id": node.node_id,
        "name": node.name,
        "description": node.description,
        "implies": list(node.implies),
        "implied_by": list(node.implied_by),
        "required_terms": list(node.required_terms),
        "required_fields": [f.as_dict() for f in node.required_fields],
        "required_verified_email": list(node.required_verified_email),
        "conflicts": sorted(node.conflicts),
    }


def outcome(result: PolicyResult) -> dict:
    body = {"ok": True, "revoked": result.revoked}
    if result.closure is not None:
        body["valid"] = sorted(result.closure.valid)
    return body


router = APIRouter()


# ============================================================
# Health
# ============================================================

@router.get("/")
def root(request: Request):
    graph = request.app.state.graph
    return {
        "service": "id_nodes",
        "version": VERSION,
        "backend": request.app.state.settings.backend,
        "vertices": graph.vertex_count,
        "edges": graph.edge_count,
        "status": "operational",
    }

@router.get("/health")
def health(request: Request):
    return {"status": "healthy", "nodes": len(request.app.state.workflow.node_graph)}


# ============================================================
# Node Graph
# ============================================================

@router.get("/nodes")
def list_nodes(wf: NodeWorkflow = Depends(get_workflow)):
    return {"nodes": [node_dict(n) for n in wf.node_graph.list_nodes()]}

@router.get("/nodes/{node_id}")
def get_node(node_id: int, wf: NodeWorkflow = Depends(get_workflow)):
    node = wf.node_graph.get_node(node_id)
    if node is None:
        raise HTTPException(404, {"error": PolicyError.E_NOT_FOUND.value,
                                  "detail": f"Node {node_id} not found"})
    return node_dict(node)

@router.get("/graph/validate")
def validate_graph(wf: NodeWorkflow = Depends(get_workflow)):
    violations = wf.node_graph.validate_graph()
    return {
        "ok": not any(v.fatal for v in violations),
        "violations": [{"kind": v.kind, "node_id": v.node_id, "detail": v.detail,
                        "fatal": v.fatal} for v in violations],
    }

@router.post("/graph/reload")
def reload_graph(wf: NodeWorkflow = Depends(get_workflow)):
    """Pick up a catalog installed by migrate.py without restarting."""
    try:
        node_graph = wf.reload_graph()
    except StructuralGraphError as e:
        raise HTTPException(409, {"error": "E_STRUCTURE", "detail": str(e)})
    return {"version": node_graph.version, "nodes": len(node_graph),
            "cycles": node_graph.find_cycles()}

@router.get("/terms")
def list_terms(wf: NodeWorkflow = Depends(get_workflow)):
    return {"terms": [{"term_id": t.term_id, "name": t.name, "title": t.title,
                       "current_revision": t.current_revision}
                      for t in wf.terms.list_terms()]}


# ============================================================
# Users, Classes, Enrollment
# ============================================================

@router.post("/users")
def create_user(req: UserCreate, wf: NodeWorkflow = Depends(get_workflow)):
    unwrap(wf.create_user(req.user_id, req.record, req.verified_emails))
    return {"user_id": req.user_id}

@router.get("/users/{user_id}")
def get_user(user_id: int, wf: NodeWorkflow = Depends(get_workflow)):
    user = wf.users.get_user(user_id)
    if user is None:
        raise HTTPException(404, {"error": PolicyError.E_NOT_FOUND.value,
                                  "detail": f"User {user_id} not found"})
    return {
        "user_id": user.user_id,
        "record": user.record,
        "verified_emails": list(user.verified_emails),
        "locked_fields": list(user.locked_fields),
    }

@router.put("/users/{user_id}/fields")
def update_field(user_id: int, req: FieldUpdate, wf: NodeWorkflow = Depends(get_workflow)):
    result = unwrap(wf.update_field(user_id, req.column, req.value))
    return {"record": result.value}

@router.post("/users/{user_id}/emails")
def add_email(user_id: int, req: EmailAdd, wf: NodeWorkflow = Depends(get_workflow)):
    result = unwrap(wf.add_verified_email(user_id, req.address))
    return {"verified_emails": result.value}

@router.post("/classes")
def create_class(req: ClassCreate, wf: NodeWorkflow = Depends(get_workflow)):
    unwrap(wf.add_class(req.class_id, req.name, req.record, req.implies))
    return {"class_id": req.class_id}

@router.post("/users/{user_id}/enrollments")
def enroll(user_id: int, req: Enrollment, wf: NodeWorkflow = Depends(get_workflow)):
    return outcome(unwrap(wf.enroll(user_id, req.class_id, req.record)))

@router.delete("/users/{user_id}/enrollments/{class_id}")
def unenroll(user_id: int, class_id: int, wf: NodeWorkflow = Depends(get_workflow)):
    return outcome(unwrap(wf.unenroll(user_id, class_id)))


# ============================================================
# Grants, Requests, Masks
# ============================================================

@router.get("/users/{user_id}/grants")
def list_grants(user_id: int, wf: NodeWorkflow = Depends(get_workflow)):
    return {"grants": [grant_dict(g) for g in wf.ledger.grants(user_id)]}

@router.post("/users/{user_id}/grants")
def grant(user_id: int, req: GrantCreate, wf: NodeWorkflow = Depends(get_workflow)):
    result = unwrap(wf.grant(user_id, req.node_id, req.expires_at, req.granted_by))
    return dict(outcome(result), grant=grant_dict(result.value))

@router.delete("/users/{user_id}/grants/{node_id}")
def revoke(user_id: int, node_id: int, revoked_by: str = "",
           wf: NodeWorkflow = Depends(get_workflow)):
    return outcome(unwrap(wf.revoke(user_id, node_id, revoked_by)))

@router.post("/users/{user_id}/requests")
def request_grant(user_id: int, req: GrantRequest, wf: NodeWorkflow = Depends(get_workflow)):
    result = unwrap(wf.request_grant(user_id, req.node_id))
    return {"ok": True, "grant": grant_dict(result.value)}

@router.post("/users/{user_id}/requests/{node_id}/approve")
def approve(user_id: int, node_id: int, req: Approval,
            wf: NodeWorkflow = Depends(get_workflow)):
    result = unwrap(wf.approve(user_id, node_id, req.expires_at, req.granted_by))
    return dict(outcome(result), grant=grant_dict(result.value))

@router.post("/users/{user_id}/masks")
def mask(user_id: int, req: MaskCreate, wf: NodeWorkflow = Depends(get_workflow)):
    return outcome(unwrap(wf.mask(user_id, req.node_id, req.masked_by)))

@router.delete("/users/{user_id}/masks/{node_id}")
def unmask(user_id: int, node_id: int, wf: NodeWorkflow = Depends(get_workflow)):
    return outcome(unwrap(wf.unmask(user_id, node_id)))


# ============================================================
# Terms and Derived Sets
# ============================================================

@router.post("/users/{user_id}/terms")
def set_term_status(user_id: int, req: TermDecision, wf: NodeWorkflow = Depends(get_workflow)):
    return outcome(unwrap(wf.set_term_status(user_id, req.term_id, req.revision, req.status)))

@router.get("/users/{user_id}/terms")
def term_statuses(user_id: int, wf: NodeWorkflow = Depends(get_workflow)):
    return {"terms": {str(tid): s.value for tid, s in wf.terms.statuses(user_id).items()}}

@router.get("/users/{user_id}/closure")
def closure(user_id: int, wf: NodeWorkflow = Depends(get_workflow)):
    return wf.closure(user_id).as_dict()

@router.get("/users/{user_id}/valid")
def valid_set(user_id: int, wf: NodeWorkflow = Depends(get_workflow)):
    rows = wf.valid_set(user_id)
    return {"valid": [{"node_id": nid, "term_ok": ok, "term_semi": semi}
                      for nid, (ok, semi) in sorted(rows.items())]}

@router.post("/users/{user_id}/refresh")
def refresh(user_id: int, wf: NodeWorkflow = Depends(get_workflow)):
    return wf.refresh(user_id).as_dict()


# ============================================================
# Reserved Names
# ============================================================

@router.get("/reserved")
def list_reserved(reserved: ReservedNames = Depends(get_reserved)):
    return {"names": reserved.list()}

@router.get("/reserved/{name}")
def check_reserved(name: str, reserved: ReservedNames = Depends(get_reserved)):
    return {"name": name, "reserved": reserved.is_reserved(name)}

@router.post("/reserved")
def reserve(req: NameBody, reserved: ReservedNames = Depends(get_reserved)):
    unwrap(reserved.insert(req.name))
    return {"name": req.name}

@router.delete("/reserved/{name}")
def release(name: str, reserved: ReservedNames = Depends(get_reserved)):
    unwrap(reserved.remove(name))
    return {"name": name}

@router.post("/hosts")
def add_host(req: NameBody, reserved: ReservedNames = Depends(get_reserved)):
    unwrap(reserved.add_host(req.name))
    return {"name": req.name}


# ============================================================
# Maintenance and Audit
# ============================================================

@router.post("/admin/sweep")
def sweep(req: SweepRequest, wf: NodeWorkflow = Depends(get_workflow)):
    swept = wf.sweep_expired(req.now)
    return {"swept": {str(uid): nodes for uid, nodes in swept.items()}}

@router.get("/audit")
def audit(user_id: Optional[int] = None, wf: NodeWorkflow = Depends(get_workflow)):
    entries = wf.audit.for_user(user_id) if user_id is not None else wf.audit.entries()
    return {"entries": [{"index": e.index, "action": e.action, "user_id": e.user_id,
                         "subject": e.subject, "actor": e.actor, "timestamp": e.timestamp}
                        for e in entries]}

@router.get("/audit/verify")
def verify_audit(wf: NodeWorkflow = Depends(get_workflow)):
    return {"valid": wf.audit.verify_chain(), "length": wf.audit.length}


app = create_app()


if __name__ == "__main__":
    import os
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
