"""Tool dispatcher: the only path by which a tool handler is ever run.

Each call goes through the same fixed pipeline::

    lookup → validate params → check permission → execute (bounded) → normalize

A failure at any stage short-circuits the remaining ones, so a request
with bad parameters never reaches the permission check, and a denied
request never reaches its handler.  Every outcome is folded into a
``ToolCallResult``; nothing raises out of :meth:`ToolDispatcher.dispatch`.

Handlers run on a shared worker pool.  When a handler exceeds its timeout
the caller gets a failure immediately, while the handler itself keeps
running to completion in the background so that no domain write is left
half-applied.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime

from pydantic import ValidationError

from src import config
from src.errors import PermissionDeniedError, ToolValidationError, UnknownToolError
from src.models import Caller, ToolCallRequest, ToolCallResult
from src.services.audit import AuditSink, LoggingAuditSink, tool_call_entry
from src.services.clinic_backend import ClinicBackend
from src.services.metrics import metrics
from src.tools import permissions, registry
from src.tools.handlers import ToolContext
from src.tools.params import field_errors

logger = logging.getLogger(__name__)

UNKNOWN_TOOL = "unknown tool"
EXECUTION_FAILED = "tool execution failed"


class ToolDispatcher:
    """Validates, authorizes and executes tool calls against a backend."""

    def __init__(
        self,
        backend: ClinicBackend,
        *,
        audit: AuditSink | None = None,
        timeout_seconds: float = config.TOOL_TIMEOUT_SECONDS,
        max_workers: int = config.TOOL_WORKERS,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._backend = backend
        self._audit = audit or LoggingAuditSink()
        self._timeout = timeout_seconds
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tool")

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # ── Public API ────────────────────────────────────────────────────

    def dispatch(self, request: ToolCallRequest, caller: Caller) -> ToolCallResult:
        t0 = time.perf_counter()
        try:
            result = self._run(request, caller)
        except UnknownToolError:
            result = ToolCallResult.fail(UNKNOWN_TOOL, kind="not_found")
        except ToolValidationError as exc:
            result = ToolCallResult.fail(str(exc), kind="validation")
        except PermissionDeniedError as exc:
            result = ToolCallResult.fail(exc.reason, kind="permission")
        elapsed = (time.perf_counter() - t0) * 1000

        if result.success:
            metrics.record_success("tool", request.tool, latency_ms=elapsed)
        else:
            metrics.record_failure(
                "tool", request.tool,
                error_type=result.error_kind or "execution", latency_ms=elapsed,
            )
            if result.error_kind == "permission":
                metrics.record_event("PermissionDenied", {"Tool": request.tool})

        self._record_audit(request, caller, result)
        return result

    # ── Pipeline ──────────────────────────────────────────────────────

    def _run(self, request: ToolCallRequest, caller: Caller) -> ToolCallResult:
        definition = registry.lookup(request.tool)

        try:
            params = definition.params_model.model_validate(request.params)
        except ValidationError as exc:
            raise ToolValidationError(request.tool, field_errors(exc)) from exc

        decision = permissions.evaluate(caller.capabilities, definition)
        if not decision.allowed:
            logger.info(
                "Permission denied: user=%s tool=%s", caller.user_id, request.tool,
            )
            raise PermissionDeniedError(decision.reason)

        ctx = ToolContext(caller=caller, backend=self._backend, now=self._clock())
        future = self._executor.submit(definition.handler, params, ctx)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeout:
            logger.error(
                "Tool %s timed out after %.1fs (left running to completion)",
                request.tool, self._timeout,
            )
            return ToolCallResult.fail(EXECUTION_FAILED)
        except Exception:
            logger.exception("Tool execution error: %s", request.tool)
            return ToolCallResult.fail(EXECUTION_FAILED)

    def _record_audit(
        self, request: ToolCallRequest, caller: Caller, result: ToolCallResult,
    ) -> None:
        entry = tool_call_entry(
            user_id=caller.user_id,
            tenant_id=caller.tenant_id,
            role=caller.role,
            tool=request.tool,
            params=request.params,
            success=result.success,
            error=result.error,
        )
        try:
            self._audit.record(entry)
        except Exception:
            logger.exception("Failed to record audit entry for %s", request.tool)
