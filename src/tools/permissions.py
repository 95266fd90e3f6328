"""Capability-based permission evaluation for tool calls.

``evaluate`` is a pure function: it never performs I/O and is safe to share
across concurrent turns.  A caller lacking *any* capability a tool requires
is denied, with a reason that is surfaced verbatim to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from src.models import Caller, Capability, Role

if TYPE_CHECKING:
    from src.tools.registry import ToolDefinition

# Which staff roles hold which capabilities
ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.ADMIN: frozenset(Capability),
    Role.MANAGER: frozenset(Capability),
    Role.RECEPTION: frozenset({
        Capability.PATIENT_LOOKUP,
        Capability.PATIENT_CONTACT,
        Capability.SCHEDULE_READ,
        Capability.APPOINTMENT_WRITE,
        Capability.BILLING_READ,
        Capability.TASK_CREATE,
    }),
    Role.DOCTOR: frozenset({
        Capability.PATIENT_LOOKUP,
        Capability.SCHEDULE_READ,
        Capability.VISIT_READ,
        Capability.TASK_CREATE,
    }),
    Role.NURSE: frozenset({
        Capability.PATIENT_LOOKUP,
        Capability.SCHEDULE_READ,
        Capability.VISIT_READ,
        Capability.TASK_CREATE,
    }),
    Role.SUPPORT: frozenset({
        Capability.PATIENT_LOOKUP,
        Capability.PATIENT_CONTACT,
        Capability.SCHEDULE_READ,
        Capability.TASK_CREATE,
    }),
    Role.ACCOUNTANT: frozenset({
        Capability.PATIENT_LOOKUP,
        Capability.BILLING_READ,
        Capability.TASK_CREATE,
    }),
}

# Service identity used by the customer-facing agent
CUSTOMER_AGENT_CAPABILITIES: frozenset[Capability] = frozenset({
    Capability.PATIENT_LOOKUP,
    Capability.SCHEDULE_READ,
    Capability.APPOINTMENT_WRITE,
    Capability.TASK_CREATE,
    Capability.ALL_BRANCHES,
})

CUSTOMER_AGENT_USER_ID = "customer-agent"


@dataclass(frozen=True)
class PermissionDecision:
    allowed: bool
    reason: str | None = None


ALLOWED = PermissionDecision(allowed=True)


def evaluate(capabilities: frozenset[Capability], tool: ToolDefinition) -> PermissionDecision:
    """Allow the call only if every required capability is held."""
    missing = sorted(tool.required_capabilities - capabilities)
    if not missing:
        return ALLOWED
    return PermissionDecision(
        allowed=False,
        reason=(
            f"You do not have permission to use the {tool.name} tool "
            f"(missing: {', '.join(missing)})"
        ),
    )


def staff_caller(
    user_id: str,
    tenant_id: str,
    role: Role,
    branch_ids: frozenset[str] | set[str] = frozenset(),
) -> Caller:
    """Build a staff caller whose capabilities follow from its role."""
    return Caller(
        user_id=user_id,
        tenant_id=tenant_id,
        role=role,
        capabilities=ROLE_CAPABILITIES[role],
        branch_ids=frozenset(branch_ids),
    )


def customer_agent_caller(tenant_id: str) -> Caller:
    return Caller(
        user_id=CUSTOMER_AGENT_USER_ID,
        tenant_id=tenant_id,
        capabilities=CUSTOMER_AGENT_CAPABILITIES,
    )
