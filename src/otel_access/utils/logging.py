# ABOUTME: Structured logging configuration and audit trail for cluster mutations
# ABOUTME: Provides run correlation IDs, structlog setup and AuditLogger

"""
Structured logging with correlation IDs and an audit trail.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Two things are logged by this tool:

1. DIAGNOSTICS: every kubectl invocation, every spawned port-forward, every
   poll sample. These go through structlog to STDERR, so that the
   operator-facing output on stdout (menus, URLs, credentials) stays
   readable and pipeable.

2. AUDIT ENTRIES: every change made to the cluster. Patching a Service to
   LoadBalancer survives this process and may cost money on a cloud
   provider; deleting a namespace cannot be undone. Those actions are
   recorded with what, where and the outcome.

=============================================================================
CORRELATION IDs
=============================================================================

One CLI invocation (or one MCP tool call) gets one correlation ID. All log
lines and audit entries emitted while handling it carry that ID, so a run
can be reassembled from a shared log file:

    {"correlation_id": "3f9a1c2e", "event": "kubectl", "args": ["patch", ...]}
    {"correlation_id": "3f9a1c2e", "event": "audit", "action": "patch_service_type"}

The ID lives in a ContextVar so concurrent MCP requests do not clobber
each other's IDs.
"""

from __future__ import annotations

import json
import logging
import re
import sys
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")

MASK = "***MASKED***"

# (pattern, replacement) pairs applied to logged strings such as kubectl stderr
SECRET_PATTERNS = [
    (re.compile(r"(token[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), rf"\1{MASK}"),
    (re.compile(r"(password[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), rf"\1{MASK}"),
    (re.compile(r"(secret[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), rf"\1{MASK}"),
    (re.compile(r"(bearer\s+)[^\s\"']+", re.I), rf"\1{MASK}"),
]

# Event keys whose values are never logged
SENSITIVE_KEYS = frozenset(["password", "token", "secret", "authorization"])


def get_correlation_id() -> str:
    """
    Get current correlation ID, generating one on first use.

    Returns:
        8-character correlation ID string.
    """
    cid = correlation_id.get()
    if not cid:
        cid = str(uuid.uuid4())[:8]
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """Set correlation ID for the current context (empty string regenerates lazily)."""
    correlation_id.set(cid)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Structlog processor adding the correlation ID to every event."""
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


def mask_text(text: str) -> str:
    """Mask secret-looking values (password=..., Bearer ...) in free text."""
    for pattern, replacement in SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def mask_sensitive_values(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """
    Mask secrets before they reach the renderer.

    kubectl echoes parts of the objects it touches in its error output, and
    Secret reads pass through the same client as everything else. Keys named
    like credentials are replaced outright; string values are scrubbed with
    SECRET_PATTERNS.
    """
    for key, value in list(event_dict.items()):
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = MASK
        elif isinstance(value, str):
            event_dict[key] = mask_text(value)
    return event_dict


def configure_logging(
    level: str = "WARNING",
    json_output: bool = False,
    mask_secrets: bool = True,
) -> None:
    """
    Configure structured logging.

    Call once at startup. Logs are written to stderr; stdout belongs to
    the operator-facing console.

    PROCESSOR PIPELINE:
    -------------------
    1. merge_contextvars: fields bound with structlog.contextvars
    2. add_log_level: "level" field
    3. TimeStamper: ISO timestamp
    4. add_correlation_id: run correlation ID
    5. mask_sensitive_values: scrub secrets (unless disabled)
    6. Renderer: JSON lines or colored console text

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        json_output: Emit JSON lines instead of console text.
        mask_secrets: Scrub secret-looking values from log events.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if mask_secrets:
        processors.append(mask_sensitive_values)

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.WARNING)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


class AuditLogger:
    """
    Audit logger for cluster mutations.

    WHAT GETS AUDITED:
    ------------------
    - Service type patches (LoadBalancer / NodePort)
    - Manifest applies and deletes
    - Namespace creation and deletion
    - Any of the above when blocked by the safety guard or rejected by
      the cluster

    Each entry records timestamp, correlation_id, action, target, result
    and optional details. With a log path, entries are appended as JSON
    lines; without one they go through structlog.

    EXAMPLE ENTRY:
    --------------
    {"timestamp": "2026-01-15T10:30:00+00:00", "correlation_id": "abc12345",
     "action": "patch_service_type", "target": "otel-demo/opentelemetry-demo-frontendproxy",
     "result": "success", "details": {"type": "LoadBalancer"}}
    """

    def __init__(self, log_path: Path | None = None) -> None:
        """
        Initialize audit logger.

        Args:
            log_path: Path to audit log file, or None to log via structlog.
                     The file is appended to, never truncated.
        """
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Log an auditable action.

        Args:
            action: Operation name, e.g. "patch_service_type", "delete_namespace"
            target: "namespace/name" of the affected resource
            result: "success", "skipped", "blocked" or "error"
            details: Additional context
        """
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }
        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry) + "\n")
        else:
            self._logger.info(
                "audit",
                action=action,
                target=target,
                result=result,
                details=details,
            )

    def log_mutation(
        self,
        action: str,
        target: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Log a successful cluster change."""
        self.log(action, target, "success", details)

    def log_skipped(self, action: str, target: str, reason: str) -> None:
        """Log a change that was not needed (resource already in the desired state or absent)."""
        self.log(action, target, "skipped", {"reason": reason})

    def log_blocked(self, action: str, target: str, reason: str) -> None:
        """Log a change refused by the safety guard."""
        self.log(action, target, "blocked", {"reason": reason})

    def log_error(self, action: str, target: str, error: str) -> None:
        """Log a change the cluster (or kubectl) rejected."""
        self.log(action, target, "error", {"error": error})
