"""
MindOps Server

FastAPI surface over the MindOps service. Authentication is handled
upstream; the caller's identity arrives in the X-User-Id header.

Endpoints:
- GET /health: Health check
- GET|PATCH /mindops/me: Caller's workspace
- GET /mindops/search?q=: Find workspaces by name
- POST /query: local, sync_collaboration or async_task query
- POST /ingest: Upload a spreadsheet
- GET|DELETE /documents: List or delete ingested files
- POST /connections, POST /connections/{id}/approve|reject,
  GET /connections/pending, GET /connections: Follow management
- POST /collaboration/process: Process one task as the target owner
- POST /collaboration/worker: Process a batch of pending tasks
- GET /collaboration/tasks, DELETE /collaboration/tasks/{id}
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timezone
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse

from . import __version__
from .common.config import ensure_directories, load_config
from .common.errors import MindOpsError
from .common.models import CollaborationTask, FollowRequest, MindOp
from .common.schemas import (
    DeleteDocumentRequest,
    DocumentList,
    FollowCreate,
    IngestionResponse,
    ProcessTaskRequest,
    QueryRequest,
    QueryResponse,
    WorkspaceUpdate,
)
from .service import MindOpsService

logger = logging.getLogger("mindops.server")


# =============================================================================
# Serialization helpers
# =============================================================================

def _iso(value) -> Optional[str]:
    if not value:
        return None
    # SQLite hands back naive values; every stored timestamp is UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def mindop_to_dict(mindop: MindOp) -> dict:
    return {
        "id": mindop.id,
        "user_id": mindop.user_id,
        "mindop_name": mindop.mindop_name,
        "mindop_description": mindop.mindop_description,
        "created_at": _iso(mindop.created_at),
    }


def follow_to_dict(follow: FollowRequest) -> dict:
    return {
        "id": follow.id,
        "requester_user_id": follow.requester_user_id,
        "target_mindop_id": follow.target_mindop_id,
        "status": follow.status,
        "created_at": _iso(follow.created_at),
        "updated_at": _iso(follow.updated_at),
    }


def task_to_dict(task: CollaborationTask) -> dict:
    return {
        "id": task.id,
        "requester_mindop_id": task.requester_mindop_id,
        "target_mindop_id": task.target_mindop_id,
        "query": task.query,
        "status": task.status,
        "priority": task.priority,
        "response": task.response,
        "error_message": task.error_message,
        "processing_metadata": task.processing_metadata,
        "created_at": _iso(task.created_at),
        "updated_at": _iso(task.updated_at),
    }


# =============================================================================
# App factory
# =============================================================================

def create_app(service: Optional[MindOpsService] = None) -> FastAPI:
    """Build the FastAPI app; a service is created at startup when none is given."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "service", None) is None:
            logger.info("Starting up...")
            ensure_directories()
            app.state.service = MindOpsService(load_config())
        svc = app.state.service
        logger.info(
            "Ready (embedding available: %s, llm: %s)",
            svc.embedding_service.is_available, svc.llm_client.provider,
        )
        yield
        logger.info("Shutting down...")

    app = FastAPI(
        title="MindOps",
        description="Personal knowledge agents over tabular data",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service

    @app.exception_handler(MindOpsError)
    async def mindops_error_handler(request: Request, exc: MindOpsError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    def get_service(request: Request) -> MindOpsService:
        svc = request.app.state.service
        if svc is None:
            raise HTTPException(status_code=503, detail="Service not initialized")
        return svc

    def current_user(x_user_id: Optional[str] = Header(None)) -> str:
        if not x_user_id:
            raise HTTPException(status_code=401, detail="Missing X-User-Id header")
        return x_user_id

    # -------------------------------------------------------------------------
    # Endpoints
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health(svc: MindOpsService = Depends(get_service)):
        """Health check endpoint"""
        return svc.health()

    @app.get("/mindops/search")
    async def search_mindops(
        q: str = Query(""),
        user_id: str = Depends(current_user),
        svc: MindOpsService = Depends(get_service),
    ):
        """Find workspaces by name so the caller can request a connection."""
        found = svc.workspaces.search(q)
        return {
            "success": True,
            "results": [
                {"id": m.id, "mindop_name": m.mindop_name, "mindop_description": m.mindop_description}
                for m in found
            ],
            "total": len(found),
            "searchTerm": q,
        }

    @app.get("/mindops/me")
    async def get_my_mindop(
        user_id: str = Depends(current_user),
        svc: MindOpsService = Depends(get_service),
    ):
        return mindop_to_dict(svc.workspaces.get_or_create_for_owner(user_id))

    @app.patch("/mindops/me")
    async def update_my_mindop(
        body: WorkspaceUpdate,
        user_id: str = Depends(current_user),
        svc: MindOpsService = Depends(get_service),
    ):
        mindop = svc.workspaces.update(
            user_id, name=body.mindop_name, description=body.mindop_description
        )
        return mindop_to_dict(mindop)

    @app.post("/query", response_model=QueryResponse)
    async def query(
        body: QueryRequest,
        user_id: str = Depends(current_user),
        svc: MindOpsService = Depends(get_service),
    ):
        return await svc.handle_query(user_id, body)

    @app.post("/ingest", response_model=IngestionResponse)
    async def ingest(
        file: UploadFile = File(...),
        mindop_id: Optional[str] = Form(None),
        user_id: str = Depends(current_user),
        svc: MindOpsService = Depends(get_service),
    ):
        data = await file.read()
        report = await asyncio.to_thread(
            svc.ingest, user_id, file.filename or "", data, mindop_id
        )
        return IngestionResponse(success=True, **report.to_dict())

    @app.get("/documents", response_model=DocumentList)
    async def list_documents(
        mindop_id: Optional[str] = None,
        user_id: str = Depends(current_user),
        svc: MindOpsService = Depends(get_service),
    ):
        documents = svc.list_documents(user_id, mindop_id)
        resolved = mindop_id or svc.workspaces.get_or_create_for_owner(user_id).id
        return DocumentList(mindop_id=resolved, documents=documents)

    @app.delete("/documents")
    async def delete_document(
        body: DeleteDocumentRequest,
        user_id: str = Depends(current_user),
        svc: MindOpsService = Depends(get_service),
    ):
        deleted = svc.delete_document(user_id, body.mindop_id, body.source_csv_name)
        return {
            "success": True,
            "deleted_chunks": deleted,
            "source_csv_name": body.source_csv_name,
        }

    @app.post("/connections")
    async def request_connection(
        body: FollowCreate,
        user_id: str = Depends(current_user),
        svc: MindOpsService = Depends(get_service),
    ):
        return follow_to_dict(svc.connections.request_follow(user_id, body.target_mindop_id))

    @app.get("/connections")
    async def list_connections(
        user_id: str = Depends(current_user),
        svc: MindOpsService = Depends(get_service),
    ):
        return {"connections": [follow_to_dict(f) for f in svc.connections.list_approved(user_id)]}

    @app.get("/connections/pending")
    async def list_pending_connections(
        user_id: str = Depends(current_user),
        svc: MindOpsService = Depends(get_service),
    ):
        return {"requests": [follow_to_dict(f) for f in svc.connections.list_pending(user_id)]}

    @app.post("/connections/{follow_id}/approve")
    async def approve_connection(
        follow_id: str,
        user_id: str = Depends(current_user),
        svc: MindOpsService = Depends(get_service),
    ):
        return follow_to_dict(svc.connections.approve(follow_id, user_id))

    @app.post("/connections/{follow_id}/reject")
    async def reject_connection(
        follow_id: str,
        user_id: str = Depends(current_user),
        svc: MindOpsService = Depends(get_service),
    ):
        return follow_to_dict(svc.connections.reject(follow_id, user_id))

    @app.post("/collaboration/process")
    async def process_task(
        body: ProcessTaskRequest,
        user_id: str = Depends(current_user),
        svc: MindOpsService = Depends(get_service),
    ):
        task = await svc.process_task(user_id, body.collaboration_task_id)
        return {"success": True, "response": task.response, "task": task_to_dict(task)}

    @app.post("/collaboration/worker")
    async def run_worker(
        user_id: str = Depends(current_user),
        svc: MindOpsService = Depends(get_service),
    ):
        tasks = await svc.run_worker(user_id)
        return {
            "success": True,
            "processed": len(tasks),
            "tasks": [task_to_dict(t) for t in tasks],
        }

    @app.get("/collaboration/tasks")
    async def list_tasks(
        role: str = "requester",
        user_id: str = Depends(current_user),
        svc: MindOpsService = Depends(get_service),
    ):
        if role == "requester":
            tasks = svc.tasks.list_as_requester(user_id)
        elif role == "target":
            tasks = svc.tasks.list_as_target(user_id)
        else:
            raise HTTPException(status_code=400, detail="role must be 'requester' or 'target'")
        return {"tasks": [task_to_dict(t) for t in tasks]}

    @app.delete("/collaboration/tasks/{task_id}")
    async def delete_task(
        task_id: str,
        user_id: str = Depends(current_user),
        svc: MindOpsService = Depends(get_service),
    ):
        svc.tasks.delete_task(task_id, user_id)
        return {"success": True, "deleted": task_id}

    return app


app = create_app()


# =============================================================================
# CLI Entry Point
# =============================================================================

def run_server():
    """Run the MindOps server"""
    import uvicorn

    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.server.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    logger.info("Starting server on %s:%d", config.server.host, config.server.port)
    uvicorn.run(
        "mindops.server:app",
        host=config.server.host,
        port=config.server.port,
        reload=False,
    )


if __name__ == "__main__":
    run_server()
