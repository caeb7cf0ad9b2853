# app/x402/audit.py
"""
Audit logging for x402 payment intents.

Every step of an intent's life is recorded so that disputes ("I paid but
was refused") can be settled from the log alone.

Log format: JSON lines (one event per line)
Log location: Configured via X402_AUDIT_LOG_PATH
Disable with X402_AUDIT_ENABLED=false

Events logged:
- Intent created (reference, terms)
- 402 returned (payment required or still pending)
- Access granted (reference, tx hash)
- Verification requested / verified / rejected / deferred
- Expired intents swept
- Error (type, context)

Audit failures are logged and swallowed; they never fail a request.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, List, Optional
from enum import Enum

from app.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    INTENT_CREATED = "intent_created"
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_PENDING = "payment_pending"
    ACCESS_GRANTED = "access_granted"
    VERIFICATION_REQUESTED = "verification_requested"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_REJECTED = "payment_rejected"
    VERIFICATION_DEFERRED = "verification_deferred"
    INTENTS_SWEPT = "intents_swept"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a unique request ID for tracking."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Path:
    """Get the path to the audit log file."""
    return Path(settings.X402_AUDIT_LOG_PATH)


def ensure_audit_log_directory() -> bool:
    """
    Ensure the audit log directory exists.

    Returns:
        True if directory exists or was created, False on error
    """
    try:
        log_dir = get_audit_log_path().parent
        if not log_dir.exists():
            log_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created audit log directory: {log_dir}")
        return True
    except OSError as e:
        logger.error(f"Failed to create audit log directory: {e}")
        return False


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    reference: Optional[str] = None,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create an audit event dictionary.

    Args:
        event_type: Type of event to log
        data: Event-specific data
        reference: Payment reference the event concerns (if any)
        client_ip: Client IP address (if available)
        request_id: Unique request identifier (if available)
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "reference": reference,
        "client_ip": client_ip,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    reference: Optional[str] = None,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an audit event to the x402 audit log.

    Returns:
        The request_id used for this event, or None if disabled or on error
    """
    if not settings.X402_AUDIT_ENABLED:
        return None

    event = create_audit_event(
        event_type=event_type,
        data=data,
        reference=reference,
        client_ip=client_ip,
        request_id=request_id
    )

    try:
        ensure_audit_log_directory()

        with open(get_audit_log_path(), "a") as f:
            f.write(json.dumps(event, default=str) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except OSError as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


# Convenience functions for specific event types

def log_intent_created(
    reference: str,
    amount: str,
    asset: str,
    chain: str,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a new payment intent."""
    return log_audit_event(
        event_type=AuditEventType.INTENT_CREATED,
        data={"amount": amount, "asset": asset, "chain": chain},
        reference=reference,
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_required_sent(
    reference: str,
    pay_to: str,
    amount: str,
    asset: str,
    network: str,
    expiry: str,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a 402 Payment Required response with instructions."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REQUIRED_SENT,
        data={
            "pay_to": pay_to,
            "amount": amount,
            "asset": asset,
            "network": network,
            "expiry": expiry,
        },
        reference=reference,
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_pending(
    reference: str,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a 402 Payment Pending response."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_PENDING,
        data={},
        reference=reference,
        client_ip=client_ip,
        request_id=request_id
    )


def log_access_granted(
    reference: str,
    tx_hash: Optional[str],
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log access to the protected resource on a paid reference."""
    return log_audit_event(
        event_type=AuditEventType.ACCESS_GRANTED,
        data={"tx_hash": tx_hash},
        reference=reference,
        client_ip=client_ip,
        request_id=request_id
    )


def log_verification_requested(
    reference: Optional[str],
    tx_hash: Optional[str],
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log an incoming verification request."""
    return log_audit_event(
        event_type=AuditEventType.VERIFICATION_REQUESTED,
        data={"tx_hash": tx_hash},
        reference=reference,
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_verified(
    reference: str,
    tx_hash: str,
    already_verified: bool = False,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a successful verification."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_VERIFIED,
        data={"tx_hash": tx_hash, "already_verified": already_verified},
        reference=reference,
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_rejected(
    reference: Optional[str],
    tx_hash: Optional[str],
    error: str,
    detail: str,
    check: Optional[str] = None,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a verification that failed for a non-retryable reason."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REJECTED,
        data={
            "tx_hash": tx_hash,
            "error": error,
            "detail": detail,
            "check": check,
        },
        reference=reference,
        client_ip=client_ip,
        request_id=request_id
    )


def log_verification_deferred(
    reference: Optional[str],
    tx_hash: Optional[str],
    error: str,
    detail: str,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a verification the caller should retry later."""
    return log_audit_event(
        event_type=AuditEventType.VERIFICATION_DEFERRED,
        data={"tx_hash": tx_hash, "error": error, "detail": detail},
        reference=reference,
        client_ip=client_ip,
        request_id=request_id
    )


def log_intents_swept(count: int) -> Optional[str]:
    """Log removal of expired Pending intents."""
    return log_audit_event(
        event_type=AuditEventType.INTENTS_SWEPT,
        data={"count": count}
    )


def log_error(
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    reference: Optional[str] = None,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log an unexpected error."""
    return log_audit_event(
        event_type=AuditEventType.ERROR,
        data={
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
        reference=reference,
        client_ip=client_ip,
        request_id=request_id
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    reference: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Read recent audit log entries.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Filter by event type (optional)
        reference: Filter by payment reference (optional)

    Returns:
        List of audit events (most recent first)
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    events = []
    try:
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event_type and event.get("event_type") != event_type.value:
                    continue
                if reference and event.get("reference") != reference:
                    continue
                events.append(event)
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    return list(reversed(events))[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """
    Get statistics from the audit log.

    Returns:
        Dict with event counts and date range
    """
    log_path = get_audit_log_path()
    stats: Dict[str, Any] = {
        "total_events": 0,
        "events_by_type": {},
        "first_event": None,
        "last_event": None,
        "log_path": str(log_path),
        "log_exists": log_path.exists(),
    }
    if not stats["log_exists"]:
        return stats

    try:
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                stats["total_events"] += 1
                event_type = event.get("event_type", "unknown")
                stats["events_by_type"][event_type] = stats["events_by_type"].get(event_type, 0) + 1

                timestamp = event.get("timestamp")
                if timestamp:
                    if stats["first_event"] is None:
                        stats["first_event"] = timestamp
                    stats["last_event"] = timestamp
    except OSError as e:
        logger.error(f"Failed to get audit stats: {e}")
        stats["error"] = str(e)

    return stats
