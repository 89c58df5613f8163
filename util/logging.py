"""
Structured logging for pattern memory operations.
Wraps the stdlib logger with operation-shaped helpers used across store, index and maintenance code.
"""

import logging
from typing import Any, Dict

MAX_DETAIL_CHARS = 50


def _truncate(text: str, limit: int = MAX_DETAIL_CHARS) -> str:
    return text[:limit] + "..." if len(text) > limit else text


class StructuredLogger:
    """Structured logger for pattern store, vector index and maintenance operations."""

    def __init__(self, name: str = "pattern_memory"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        if status in ("failed", "error"):
            self.logger.error(message)
        elif status in ("degraded", "skipped"):
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def log_pattern_operation(self, operation: str, pattern_id: str, tier: str,
                              details: Dict[str, Any] = None, status: str = "success"):
        """Log a pattern lifecycle operation (create, update, promote, evict, prune)."""
        log_details = {"pattern_id": pattern_id, "tier": tier}
        if details:
            for k, v in details.items():
                log_details[k] = _truncate(v) if isinstance(v, str) else v

        self.log_operation(f"pattern.{operation}", status, log_details)

    def log_vector_operation(self, operation: str, record_id: str, details: Dict[str, Any] = None, status: str = "success"):
        """Log a vector operation."""
        log_details = {"record_id": record_id}
        if details:
            log_details.update(details)

        self.log_operation(f"vector.{operation}", status, log_details)

    def log_embedding_fallback(self, provider: str, reason: str, text: str = None):
        """Log that the primary embedding model failed and the hash fallback was used."""
        details = {"provider": provider, "reason": _truncate(reason, 100)}
        if text is not None:
            details["text"] = _truncate(text)

        self.log_operation("embedding.fallback", "degraded", details)

    def log_maintenance_task(self, task_name: str, start_time: float, end_time: float,
                             status: str = "success", details: Dict[str, Any] = None):
        """Log maintenance task execution."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)
        elif status == "success":
            log_details["message"] = f"Maintenance task '{task_name}' completed in {duration_ms}ms"
        elif status == "failed":
            log_details["message"] = f"Maintenance task '{task_name}' failed after {duration_ms}ms"

        self.log_operation(f"maintenance.{task_name}", status, log_details)

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


# Global logger instance
logger = StructuredLogger()
