# backend/api/routes.py
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from core.errors import LabError
from core.models import Node
from core.orchestrator import LabOrchestrator
from . import models

logger = logging.getLogger(__name__)

router = APIRouter()

_error_responses = {
    400: {"model": models.ErrorResponse},
    404: {"model": models.ErrorResponse},
    500: {"model": models.ErrorResponse},
}


def get_orchestrator(request: Request) -> LabOrchestrator:
    return request.app.state.orchestrator


async def lab_error_handler(request: Request, exc: LabError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.reason)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.reason, "message": exc.message},
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return JSONResponse(
        status_code=400,
        content={"error": "invalid_request", "message": problems or "Invalid request"},
    )


@router.get("/health", response_model=models.HealthResponse)
def health(orchestrator: LabOrchestrator = Depends(get_orchestrator)):
    return orchestrator.health()


@router.get("/nodes", response_model=list[Node])
def list_nodes(orchestrator: LabOrchestrator = Depends(get_orchestrator)):
    """Get a list of all nodes and their current status."""
    return orchestrator.list_nodes()


@router.post("/nodes", response_model=Node, status_code=201, responses=_error_responses)
def create_node(body: models.CreateNodeRequest,
                orchestrator: LabOrchestrator = Depends(get_orchestrator)):
    """Create a new, stopped node."""
    return orchestrator.create(body.device_type, body.name)


@router.get("/nodes/{node_id}", response_model=Node, responses=_error_responses)
def get_node(node_id: str, orchestrator: LabOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_node(node_id)


@router.post("/nodes/{node_id}/run", response_model=Node, responses=_error_responses)
def run_node(node_id: str, orchestrator: LabOrchestrator = Depends(get_orchestrator)):
    """Start a node."""
    return orchestrator.run(node_id)


@router.post("/nodes/{node_id}/stop", response_model=Node, responses=_error_responses)
def stop_node(node_id: str, orchestrator: LabOrchestrator = Depends(get_orchestrator)):
    """Stop a running node."""
    return orchestrator.stop(node_id)


@router.post("/nodes/{node_id}/wipe", response_model=models.WipeResponse, responses=_error_responses)
def wipe_node(node_id: str, orchestrator: LabOrchestrator = Depends(get_orchestrator)):
    """Stop a node (if running) and reset its overlay disk."""
    node = orchestrator.wipe(node_id)
    return models.WipeResponse(message="Wiped", node=node)


@router.delete("/nodes/{node_id}", response_model=models.MessageResponse, responses=_error_responses)
def delete_node(node_id: str, orchestrator: LabOrchestrator = Depends(get_orchestrator)):
    """Permanently delete a node."""
    orchestrator.delete(node_id)
    return models.MessageResponse(message="Deleted")
