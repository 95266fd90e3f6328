"""FastAPI route definitions for the clinic assistant API."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from src import config
from src.agent import Orchestrator
from src.api.schemas import HealthResponse, StatusResponse, ToolExecuteRequest
from src.errors import ConversationNotFound, PersistenceError
from src.models import (
    Caller,
    CustomerAgentRequest,
    CustomerAgentResponse,
    Role,
    StaffCopilotRequest,
    StaffCopilotResponse,
    ToolCallRequest,
    ToolCallResult,
)
from src.tools.permissions import customer_agent_caller, staff_caller
from src.tools.registry import TOOL_REGISTRY

logger = logging.getLogger(__name__)

router = APIRouter()

CUSTOMER_AGENT_ROLES = frozenset({Role.ADMIN, Role.MANAGER, Role.SUPPORT, Role.RECEPTION})
RETRY_AFTER_SECONDS = "1"


def _get_orchestrator(request: Request) -> Orchestrator:
    """Retrieve the orchestrator built during the FastAPI lifespan."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=503,
            detail="The assistant is still starting up. Please try again in a moment.",
        )
    return orchestrator


def _staff_from_headers(
    user_id: str | None, tenant_id: str | None, role: str | None, branch_ids: str | None,
) -> Caller:
    """Build the calling staff identity from the trusted gateway headers."""
    if not user_id or not tenant_id or not role:
        raise HTTPException(status_code=401, detail="Missing caller identity headers.")
    try:
        parsed_role = Role(role.strip().upper())
    except ValueError:
        raise HTTPException(status_code=403, detail=f"Unknown role: {role}") from None
    branches = {b.strip() for b in (branch_ids or "").split(",") if b.strip()}
    return staff_caller(user_id, tenant_id, parsed_role, branches)


async def _run_turn(http_request: Request, func, *args):
    """Run a blocking turn on a worker thread and map its failures to HTTP."""
    request_id = getattr(http_request.state, "request_id", "?")
    try:
        return await asyncio.to_thread(func, *args)
    except ConversationNotFound as e:
        raise HTTPException(status_code=404, detail="Conversation not found.") from e
    except PersistenceError:
        logger.warning("[%s] Conversation could not be persisted", request_id, exc_info=True)
        return JSONResponse(
            status_code=503,
            content={"detail": "The conversation could not be saved. Please retry."},
            headers={"Retry-After": RETRY_AFTER_SECONDS},
        )
    except Exception as e:
        # Full traceback stays server-side
        logger.exception("[%s] Error processing assistant turn", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.get("/ai/status", response_model=StatusResponse, response_model_by_alias=True)
async def ai_status(http_request: Request):
    """Report the classifier backend and which autonomous actions are enabled."""
    orchestrator = _get_orchestrator(http_request)
    return StatusResponse(
        classifier_backend=config.CLASSIFIER_BACKEND,
        booking_enabled=orchestrator.policy.booking_enabled,
        intake_tasks_enabled=orchestrator.policy.intake_assignee_id is not None,
        tools=sorted(TOOL_REGISTRY),
    )


@router.post("/ai/customer-agent", response_model=CustomerAgentResponse, response_model_by_alias=True)
async def customer_agent(
    request: CustomerAgentRequest,
    http_request: Request,
    x_user_id: str | None = Header(default=None),
    x_tenant_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
    x_branch_ids: str | None = Header(default=None),
):
    """Process one inbound customer message.

    The request is relayed by a staff-facing intake surface, so the relaying
    user's role is checked, but tools run under the customer agent's own
    service identity.
    """
    staff = _staff_from_headers(x_user_id, x_tenant_id, x_user_role, x_branch_ids)
    if staff.role not in CUSTOMER_AGENT_ROLES:
        raise HTTPException(status_code=403, detail="Your role cannot use the customer agent.")

    orchestrator = _get_orchestrator(http_request)
    return await _run_turn(
        http_request,
        orchestrator.handle_customer_message,
        request,
        customer_agent_caller(staff.tenant_id),
    )


@router.post("/ai/staff-copilot", response_model=StaffCopilotResponse, response_model_by_alias=True)
async def staff_copilot(
    request: StaffCopilotRequest,
    http_request: Request,
    x_user_id: str | None = Header(default=None),
    x_tenant_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
    x_branch_ids: str | None = Header(default=None),
):
    """Answer a staff copilot query under the caller's own permissions."""
    caller = _staff_from_headers(x_user_id, x_tenant_id, x_user_role, x_branch_ids)
    orchestrator = _get_orchestrator(http_request)
    return await _run_turn(http_request, orchestrator.handle_staff_query, request, caller)


@router.post("/ai/tools/execute", response_model=ToolCallResult, response_model_by_alias=True)
async def execute_tool(
    request: ToolExecuteRequest,
    http_request: Request,
    x_user_id: str | None = Header(default=None),
    x_tenant_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
    x_branch_ids: str | None = Header(default=None),
):
    """Dispatch a single tool call directly, outside of any conversation."""
    caller = _staff_from_headers(x_user_id, x_tenant_id, x_user_role, x_branch_ids)
    orchestrator = _get_orchestrator(http_request)
    return await _run_turn(
        http_request,
        orchestrator.dispatcher.dispatch,
        ToolCallRequest(tool=request.tool, params=request.params),
        caller,
    )
