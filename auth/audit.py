"""
auth/audit.py -- Structured auth and security event logging.

Two event streams on the "gatehouse.auth.audit" logger:

  log_auth_event()      one line per user-facing auth outcome
                        (login, signup, logout, password_change, ...).
                        INFO on success, WARNING on failure.

  log_security_event()  anomalies worth an operator's attention
                        (login_rate_limited, session_origin_mismatch, implicit
                        oauth link, ...). Level follows severity.

Privacy: emails and IP addresses are masked before they reach the log line
(a***@example.com, 203.0.113.x). Raw passwords and raw tokens are never
passed to these functions.
"""

from __future__ import annotations

import logging

logger = logging.getLogger("gatehouse.auth.audit")

_SEVERITY_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.CRITICAL,
}


def mask_email(email: str | None) -> str | None:
    """Keep the first character of the local part and the full domain."""
    if not email:
        return None
    local, sep, domain = email.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def mask_ip(ip_address: str | None) -> str | None:
    """Drop the host part: last IPv4 octet, or everything after the IPv6 /64."""
    if not ip_address:
        return None
    if "." in ip_address and ":" not in ip_address:
        parts = ip_address.split(".")
        if len(parts) == 4:
            return ".".join(parts[:3] + ["x"])
        return "x"
    if ":" in ip_address:
        groups = ip_address.split(":")
        return ":".join(groups[:4]) + "::x"
    return "x"


def _format(fields: dict) -> str:
    return " ".join(f"{k}={v}" for k, v in fields.items() if v is not None)


def log_auth_event(
    event: str,
    success: bool,
    user_id: str | None = None,
    email: str | None = None,
    ip_address: str | None = None,
    error: str | None = None,
    **metadata,
) -> None:
    fields = {
        "category": "auth",
        "event": event,
        "success": success,
        "user_id": user_id,
        "email": mask_email(email),
        "ip": mask_ip(ip_address),
        "error": error,
        **metadata,
    }
    level = logging.INFO if success else logging.WARNING
    logger.log(level, "Auth %s %s %s", event, "succeeded" if success else "failed", _format(fields))


def log_security_event(
    event: str,
    severity: str = "medium",
    user_id: str | None = None,
    email: str | None = None,
    ip_address: str | None = None,
    action_taken: str | None = None,
    **details,
) -> None:
    fields = {
        "category": "security",
        "event": event,
        "severity": severity,
        "user_id": user_id,
        "email": mask_email(email),
        "ip": mask_ip(ip_address),
        "action": action_taken,
        **details,
    }
    logger.log(_SEVERITY_LEVELS.get(severity, logging.WARNING), "Security event %s %s", event, _format(fields))
