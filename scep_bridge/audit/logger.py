"""Audit logging for the bridge.

Provides structured logging with correlation IDs for tracing an enrollment
from the SCEP request through authorization and ACME issuance.
"""

from __future__ import annotations

import sys
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loguru import logger

from scep_bridge.exceptions import ScepBridgeError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from scep_bridge.server.supervisor import TaskOutcome


# Context variable for request correlation ID
_correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """Get the current correlation ID for request tracing."""
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Set correlation ID for current request context."""
    if correlation_id is None:
        correlation_id = str(uuid.uuid4())
    _correlation_id.set(correlation_id)
    return correlation_id


def clear_correlation_id() -> None:
    """Clear the correlation ID after request completes."""
    _correlation_id.set("")


_AUDIT_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} [{level}] "
    "[{extra[correlation_id]}] <{extra[event]}> {message} | {extra}"
)


def configure_logger(*, debug: bool = False, log_file: Path | None = None) -> None:
    """Configure the audit logger.

    Args:
        debug: Emit DEBUG records; otherwise INFO and above.
        log_file: Optional file to receive the same records, rotated.
    """
    logger.remove()
    level = "DEBUG" if debug else "INFO"

    logger.add(
        sys.stderr,
        level=level,
        format=_AUDIT_FORMAT,
        filter=lambda r: r["extra"].get("audit", False),
    )

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_path),
            level=level,
            format=_AUDIT_FORMAT,
            rotation="10 MB",
            retention="90 days",
            compression="gz",
            filter=lambda r: r["extra"].get("audit", False),
        )


def _get_audit_logger() -> Any:
    """Get logger bound with audit context."""
    return logger.bind(
        audit=True,
        correlation_id=get_correlation_id() or "-",
        event="",
    )


def log_csr_rejected(*, secret_known: bool, name: str, field: str) -> None:
    """Log a signing request rejected because a name is not whitelisted.

    Args:
        secret_known: Whether the challenge password has any rules at all.
        name: The first name that failed the check.
        field: "CN" or "SAN".
    """
    audit = _get_audit_logger().bind(
        event="csr_rejected",
        component="whitelist",
        rejected_name=name,
        rejected_field=field,
        secret_known=secret_known,
    )
    if field == "CN":
        audit.warning("Subject CN not allowed: {}", name)
    else:
        audit.warning("SAN not allowed: {}", name)


def log_csr_approved(*, common_name: str, dns_names: Sequence[str], subject: str) -> None:
    """Log a signing request that passed whitelist verification."""
    audit = _get_audit_logger().bind(
        event="csr_approved",
        component="whitelist",
        csr_subject=subject,
        common_name=common_name,
        dns_names=",".join(dns_names),
    )
    audit.info("CSR passed verification: {}", subject)


def log_certificate_issued(
    *,
    subject: str,
    serial_number: int,
    not_before: datetime,
    not_after: datetime,
    transaction_id: str,
) -> None:
    """Log a certificate obtained from the ACME CA."""
    nb = not_before.isoformat() if not_before.tzinfo else not_before.replace(tzinfo=UTC).isoformat()
    na = not_after.isoformat() if not_after.tzinfo else not_after.replace(tzinfo=UTC).isoformat()

    audit = _get_audit_logger().bind(
        event="cert_issued",
        component="acme",
        cert_subject=subject,
        serial_number=serial_number,
        not_before=nb,
        not_after=na,
        transaction_id=transaction_id,
    )
    audit.info("Certificate issued: {}", subject)


def log_acme_registered(*, email: str, directory_url: str, dns_provider: str) -> None:
    """Log ACME account registration."""
    audit = _get_audit_logger().bind(
        event="acme_registered",
        component="acme",
        email=email,
        directory_url=directory_url,
        dns_provider=dns_provider,
    )
    audit.info("ACME account registered for {}", email)


def log_service_call(*, method: str, took: float, error: BaseException | None = None) -> None:
    """Log one SCEP service call with its duration."""
    audit = _get_audit_logger().bind(
        event="service_call",
        component="scep_service",
        method=method,
        took=f"{took:.6f}s",
        err=str(error) if error is not None else None,
    )
    if error is None:
        audit.info("{} took {:.3f}s", method, took)
    else:
        audit.warning("{} failed after {:.3f}s: {}", method, took, error)


def log_debug(message: str, **fields: Any) -> None:
    """Log a debug record with arbitrary fields."""
    _get_audit_logger().bind(event="debug", **fields).debug(message)


def log_error(*, error: Exception, context: str) -> None:
    """Log an error with full context.

    Bridge errors also bind the fields of their to_audit_dict().
    """
    fields = error.to_audit_dict() if isinstance(error, ScepBridgeError) else {}
    audit = _get_audit_logger().bind(
        event="error",
        error_type=type(error).__name__,
        error_message=str(error),
        context=context,
        **fields,
    )
    audit.opt(exception=error).error("Error during {}: {}", context, error)


def log_startup(*, version: str, listen: str) -> None:
    """Log server startup."""
    audit = _get_audit_logger().bind(
        event="startup",
        version=version,
        listen=listen,
    )
    audit.info("SCEP Bridge v{} listening on {}", version, listen)


def log_shutdown(*, reason: str) -> None:
    """Log the start of an orderly shutdown."""
    audit = _get_audit_logger().bind(event="shutdown", component="http", reason=reason)
    audit.info("SCEP Bridge shutting down: {}", reason)


def log_terminated(*, outcomes: Sequence[TaskOutcome]) -> None:
    """Log how each supervised task concluded."""
    summary = "; ".join(str(outcome) for outcome in outcomes)
    audit = _get_audit_logger().bind(event="terminated", component="http", terminated=summary)
    audit.info("terminated: {}", summary)
