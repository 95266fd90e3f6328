"""Centralized configuration for the Clinic Assistant orchestrator.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/clinic-assistant/<VARIABLE_NAME>``.

Secrets are resolved lazily by the component that needs them, so the
keyword classifier and the in-memory backend run without any credentials.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 — lazy import to avoid boto3 dep in tests

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/clinic-assistant/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def require_secret(name: str) -> str:
    """Return a secret from env-var or SSM, or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /clinic-assistant/{name} (AWS)."
    )


def _float_env(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


# ── Intent classification ───────────────────────────────────────────
# "keyword" (rule-based, no credentials) or "anthropic" (LLM classifier)
CLASSIFIER_BACKEND: str = os.getenv("CLASSIFIER_BACKEND", "keyword").lower()
CLASSIFIER_MODEL_NAME: str = os.getenv("CLASSIFIER_MODEL_NAME", "claude-haiku-4-5")

# ── Orchestrator policy ─────────────────────────────────────────────
LOW_CONFIDENCE_THRESHOLD: float = _float_env("LOW_CONFIDENCE_THRESHOLD", 0.5)
HISTORY_WINDOW_TURNS: int = _int_env("HISTORY_WINDOW_TURNS", 3)
HANDOFF_ESCALATION_COUNT: int = _int_env("HANDOFF_ESCALATION_COUNT", 2)
TOOL_TIMEOUT_SECONDS: float = _float_env("TOOL_TIMEOUT_SECONDS", 5.0)
CLASSIFIER_TIMEOUT_SECONDS: float = _float_env("CLASSIFIER_TIMEOUT_SECONDS", 5.0)
TOOL_WORKERS: int = _int_env("TOOL_WORKERS", 8)

# ── Clinic defaults ─────────────────────────────────────────────────
CLINIC_NAME: str = os.getenv("CLINIC_NAME", "our clinic")
CLINIC_OPEN_HOUR: int = _int_env("CLINIC_OPEN_HOUR", 9)
CLINIC_CLOSE_HOUR: int = _int_env("CLINIC_CLOSE_HOUR", 17)
DEFAULT_COUNTRY_PREFIX: str = os.getenv("DEFAULT_COUNTRY_PREFIX", "+964")

# Autonomous booking by the customer agent is enabled only when all three are set
BOOKING_BRANCH_ID: str | None = os.getenv("BOOKING_BRANCH_ID") or None
BOOKING_DOCTOR_ID: str | None = os.getenv("BOOKING_DOCTOR_ID") or None
BOOKING_SERVICE_ID: str | None = os.getenv("BOOKING_SERVICE_ID") or None

# Staff member who receives follow-up tasks raised by the customer agent
INTAKE_ASSIGNEE_ID: str | None = os.getenv("INTAKE_ASSIGNEE_ID") or None

# ── Clinic CRUD API (optional; in-memory backend when unset) ─────────
CLINIC_API_BASE_URL: str | None = os.getenv("CLINIC_API_BASE_URL") or None

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = _int_env("SERVER_PORT", 8000)
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
