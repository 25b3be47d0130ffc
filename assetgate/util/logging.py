"""
Structured logging for registry mutations, cache decisions, sync and flush.
"""

import logging
import os
from typing import Any, Dict, List


class StructuredLogger:
    """Structured logger for registry and cache operations."""

    def __init__(self, name: str = "assetgate", level: int = None):
        self.logger = logging.getLogger(name)
        if level is None:
            level = logging.DEBUG if os.getenv("DEBUG", "false").lower() == "true" else logging.INFO
        self.logger.setLevel(level)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_registry_mutation(self, operation: str, asset_key: str, caller: str, status: str = "success", details: Dict[str, Any] = None):
        """Log a registry write, accepted or rejected."""
        log_details = {"asset_key": _truncate(asset_key), "caller": caller}
        if details:
            log_details.update(details)

        level = logging.WARNING if status == "rejected" else logging.INFO
        self.log_operation(f"registry.{operation}", status, log_details, level)

    def log_access_decision(self, asset_key: str, account: str, granted: bool, reason: str, source: str = "cache"):
        """Log one access decision."""
        log_details = {
            "asset_key": _truncate(asset_key),
            "account": account,
            "reason": reason,
            "source": source
        }
        self.log_operation("access.decision", "granted" if granted else "denied", log_details)

    def log_sync(self, asset_key: str, status: str = "success", details: Dict[str, Any] = None):
        """Log a full snapshot sync."""
        log_details = {"asset_key": _truncate(asset_key)}
        if details:
            log_details.update(details)

        level = logging.WARNING if status == "failed" else logging.INFO
        self.log_operation("cache.sync", status, log_details, level)

    def log_delta(self, asset_key: str, event: str, account: str, seq: int = None):
        """Log a live delta applied to the snapshot."""
        log_details = {"asset_key": _truncate(asset_key), "event": event, "account": account}
        if seq is not None:
            log_details["seq"] = seq
        self.log_operation("cache.delta", "applied", log_details)

    def log_flush(self, asset_key: str, status: str = "success", details: Dict[str, Any] = None):
        """Log an audit flush to the registry."""
        log_details = {"asset_key": _truncate(asset_key)}
        if details:
            log_details.update(details)

        level = logging.WARNING if status == "failed" else logging.INFO
        self.log_operation("cache.flush", status, log_details, level)

    def log_heartbeat_task(self, task_name: str, start_time: float, end_time: float, status: str = "success", details: Dict[str, Any] = None):
        """Log heartbeat task execution."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)
        elif status == "success":
            log_details["message"] = f"Heartbeat task '{task_name}' completed in {duration_ms}ms"
        elif status == "failed":
            log_details["message"] = f"Heartbeat task '{task_name}' failed after {duration_ms}ms"

        level = logging.WARNING if status == "failed" else logging.DEBUG
        self.log_operation(f"heartbeat.{task_name}", status, log_details, level)

    def log_validation_error(self, operation: str, errors: List[Any]):
        """Log request validation errors with truncated messages."""
        sanitized_errors = [str(error)[:100] for error in errors]
        self.log_operation(f"validation.{operation}", "rejected", {
            "errors": sanitized_errors,
            "error_count": len(sanitized_errors)
        }, logging.WARNING)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


def _truncate(value: str, limit: int = 64) -> str:
    """Asset keys are opaque and may be long; keep log lines bounded."""
    if value is None:
        return ""
    return value if len(value) <= limit else value[:limit - 3] + "..."


# Global logger instance
logger = StructuredLogger()
