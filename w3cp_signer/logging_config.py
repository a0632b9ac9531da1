"""
Logging configuration for the W3CP signer.

Provides structured JSON logging for audit trails and debugging.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Optional

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems like ELK, Splunk, or CloudWatch.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Add request ID if available
        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Specialized logger for audit events.

    Records every lift decision and every change in the ledger
    connection, so an operator can reconstruct what was attested
    and why a request was refused.
    """

    def __init__(self, name: str = "w3cp_signer.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        """Internal logging method with extra fields."""
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **kwargs
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def lift_request(self, cp_id: str, did: str) -> None:
        """Log an accepted lift request that is about to be submitted."""
        self._log(
            logging.INFO,
            "LIFT_REQUEST",
            cp_id=cp_id,
            did=did,
            message=f"Request ok cpId={cp_id}, did={did}"
        )

    def lift_rejected(self, reason: str, cp_id: Optional[str] = None, did: Optional[str] = None) -> None:
        """Log a lift refused before submission."""
        self._log(
            logging.WARNING,
            "LIFT_REJECTED",
            cp_id=cp_id,
            did=did,
            reason=reason,
            message=f"Lift rejected: {reason}"
        )

    def lift_confirmed(
        self,
        cp_id: str,
        did: str,
        tx_hash: str,
        block_hash: str,
        block_number: Optional[int] = None
    ) -> None:
        """Log a lift included in a block."""
        self._log(
            logging.INFO,
            "LIFT_CONFIRMED",
            cp_id=cp_id,
            did=did,
            tx_hash=tx_hash,
            block_hash=block_hash,
            block_number=block_number,
            message=f"Lift done for cpId={cp_id} in block {block_hash}"
        )

    def lift_failed(self, cp_id: str, did: str, detail: str, tx_hash: Optional[str] = None) -> None:
        """Log a lift that failed during signing, submission or confirmation."""
        self._log(
            logging.ERROR,
            "LIFT_FAILED",
            cp_id=cp_id,
            did=did,
            tx_hash=tx_hash,
            detail=detail,
            message=f"Lift failed for cpId={cp_id}: {detail}"
        )

    def chain_connection(self, event: str, ready: bool, detail: Optional[str] = None) -> None:
        """Log a ledger connection lifecycle event."""
        self._log(
            logging.INFO if ready else logging.WARNING,
            "CHAIN_CONNECTION",
            connection_event=event,
            ready=ready,
            detail=detail,
            message=f"Chain {event}"
        )

    def security_event(
        self,
        event: str,
        severity: str = "medium",
        **details
    ) -> None:
        """Log a security-relevant event."""
        level = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL
        }.get(severity, logging.WARNING)

        self._log(
            level,
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            **details,
            message=f"Security event: {event}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Create formatter
    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # File handler (if specified)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request ID for the current context.

    Args:
        request_id: Request ID to set, or None to generate one

    Returns:
        The request ID that was set
    """
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


# Global audit logger instance
audit_log = AuditLogger()
