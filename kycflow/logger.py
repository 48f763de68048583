"""
Structured logging system for kycflow.

Provides centralized logging with console and file outputs plus
counters for monitoring verification partner health and onboarding
outcomes.
"""

import json
import logging
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional


class StructuredLogger:
    """
    Centralized logger with support for console and file outputs.
    Tracks metrics for verification calls and onboarding decisions.
    """

    def __init__(
        self,
        name: str = "kycflow",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = False,
        enable_console: bool = True,
    ):
        """
        Initialize the structured logger.

        Args:
            name: Logger name
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_dir: Directory for log files (default: logs/)
            enable_file: Write logs to file
            enable_console: Output logs to console
        """
        self.logger = logging.getLogger(name)
        self._lock = threading.Lock()
        self.metrics = self._empty_metrics()
        self.configure(level, log_dir, enable_file, enable_console)

    def configure(
        self,
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = False,
        enable_console: bool = True,
    ):
        """Replace handlers and level; metrics are kept."""
        self.logger.setLevel(getattr(logging, level.upper()))
        for handler in list(self.logger.handlers):
            handler.close()
        self.logger.handlers.clear()

        if enable_console:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(getattr(logging, level.upper()))
            console_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

        if enable_file:
            if log_dir is None:
                log_dir = Path("logs")
            log_dir.mkdir(parents=True, exist_ok=True)

            log_file = log_dir / f"kycflow_{datetime.now().strftime('%Y%m%d')}.log"
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)
            file_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_formatter)
            self.logger.addHandler(file_handler)

    @staticmethod
    def _empty_metrics() -> dict:
        return {
            "verification_calls": 0,
            "outcomes_by_service": {},
            "breaker_transitions": {},
            "onboardings_decided": {},
            "aborts_by_type": {},
            "replays": 0,
        }

    def debug(self, message: str, **kwargs):
        """Log debug message with optional context."""
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs):
        """Log info message with optional context."""
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with optional context."""
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with optional context."""
        self._log(logging.ERROR, message, kwargs)

    def critical(self, message: str, **kwargs):
        """Log critical message with optional context."""
        self._log(logging.CRITICAL, message, kwargs)

    def _log(self, level: int, message: str, context: dict):
        if context:
            message = f"{message} | Context: {json.dumps(context, default=str)}"
        self.logger.log(level, message)

    # Metric tracking methods

    def record_verification_call(self, service: str, kind: str):
        """Count one outbound verification attempt and its classified outcome."""
        with self._lock:
            self.metrics["verification_calls"] += 1
            per_service = self.metrics["outcomes_by_service"].setdefault(service, {})
            per_service[kind] = per_service.get(kind, 0) + 1

    def record_breaker_transition(self, service: str, new_state: str):
        with self._lock:
            key = f"{service}:{new_state}"
            transitions = self.metrics["breaker_transitions"]
            transitions[key] = transitions.get(key, 0) + 1

    def record_decision(self, overall_status: str):
        with self._lock:
            decided = self.metrics["onboardings_decided"]
            decided[overall_status] = decided.get(overall_status, 0) + 1

    def record_abort(self, error_type: str):
        with self._lock:
            aborts = self.metrics["aborts_by_type"]
            aborts[error_type] = aborts.get(error_type, 0) + 1

    def record_replay(self):
        with self._lock:
            self.metrics["replays"] += 1

    def get_metrics(self) -> dict:
        """Return a snapshot of current metrics."""
        with self._lock:
            return json.loads(json.dumps(self.metrics))

    def log_metrics_summary(self):
        """Log a summary of current metrics."""
        metrics = self.get_metrics()

        self.info("=== Onboarding Session Metrics ===")
        self.info(f"Verification calls: {metrics['verification_calls']}")
        for service, outcomes in metrics["outcomes_by_service"].items():
            total = sum(outcomes.values())
            transient = outcomes.get("transient", 0)
            rate = round(transient / total * 100, 1) if total else 0
            self.info(f"  {service}: {total} calls ({rate}% transient)")

        if metrics["onboardings_decided"]:
            self.info("Decisions:")
            for status, count in metrics["onboardings_decided"].items():
                self.info(f"  {status}: {count}")

        if metrics["aborts_by_type"]:
            self.info("Aborts:")
            for error_type, count in metrics["aborts_by_type"].items():
                self.info(f"  {error_type}: {count}")


# Global logger instance
_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "kycflow",
    level: str = "INFO",
    **kwargs
) -> StructuredLogger:
    """
    Get or create the global logger instance.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        **kwargs: Additional arguments passed to StructuredLogger

    Returns:
        StructuredLogger instance
    """
    global _global_logger

    if _global_logger is None:
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)

    return _global_logger


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None
