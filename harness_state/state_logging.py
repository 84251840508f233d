"""Logging and observability utilities for harness state.

This module provides structured logging, operation timing and
observability hooks for state machine and coherence events.
"""

from __future__ import annotations

import json
import os
import time
import logging as std_logging
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

LOG_LEVEL_ENV = "HARNESS_LOG_LEVEL"


def setup_logging(log_level: Union[str, int, None] = None, log_file: Optional[Path] = None) -> None:
    """Setup structured logging for the harness."""
    if log_level is None:
        log_level = os.getenv(LOG_LEVEL_ENV, "INFO").upper()

    logger = std_logging.getLogger("harness")
    logger.setLevel(log_level)
    logger.handlers.clear()

    detailed_formatter = std_logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # stderr, since stdout carries the MCP stdio transport
    console_handler = std_logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(detailed_formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = std_logging.FileHandler(log_file)
        file_handler.setLevel(std_logging.DEBUG)
        file_handler.setFormatter(JsonFormatter())
        logger.addHandler(file_handler)

    logger.info("Harness logging initialized")


class JsonFormatter(std_logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: std_logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_entry.update(record.extra_fields)

        return json.dumps(log_entry, default=str)


class PerformanceMonitor:
    """Keep timing metrics for state operations."""

    def __init__(self):
        self.metrics: Dict[str, List[Dict[str, Any]]] = {}

    def record_metric(self, name: str, value: Any, tags: Optional[Dict[str, str]] = None) -> None:
        metric = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "name": name,
            "value": value,
            "tags": tags or {}
        }
        self.metrics.setdefault(name, []).append(metric)

        logger = std_logging.getLogger("harness.performance")
        logger.debug(f"Metric recorded: {name}={value}", extra={"extra_fields": metric})

    def get_metrics(self, name: Optional[str] = None) -> Dict[str, List[Dict[str, Any]]]:
        if name:
            return {name: self.metrics.get(name, [])}
        return self.metrics.copy()

    def clear(self) -> None:
        self.metrics.clear()


performance_monitor = PerformanceMonitor()


def log_performance(operation_name: str):
    """Decorator recording the duration of an operation, successful or not."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.time()
            logger = std_logging.getLogger("harness.performance")
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                duration = time.time() - start_time
                performance_monitor.record_metric(
                    f"{operation_name}_duration",
                    duration,
                    {"status": "error", "error_type": type(e).__name__}
                )
                logger.warning(f"Failed operation: {operation_name} after {duration:.3f}s - {e}")
                raise

            duration = time.time() - start_time
            performance_monitor.record_metric(
                f"{operation_name}_duration",
                duration,
                {"status": "success"}
            )
            logger.debug(f"Completed operation: {operation_name} in {duration:.3f}s")
            return result

        return wrapper
    return decorator


@contextmanager
def log_operation(operation_name: str, **extra_fields):
    """Context manager to log operations with custom fields."""
    logger = std_logging.getLogger("harness.operations")
    start_time = time.time()

    logger.info(f"Starting operation: {operation_name}", extra={"extra_fields": {
        "operation": operation_name,
        "status": "started",
        **extra_fields
    }})

    try:
        yield
    except Exception as e:
        duration = time.time() - start_time
        logger.error(f"Failed operation: {operation_name} after {duration:.3f}s - {e}", extra={"extra_fields": {
            "operation": operation_name,
            "status": "failed",
            "duration": duration,
            "error_type": type(e).__name__,
            "error_message": str(e),
            **extra_fields
        }})
        raise

    duration = time.time() - start_time
    logger.info(f"Completed operation: {operation_name} in {duration:.3f}s", extra={"extra_fields": {
        "operation": operation_name,
        "status": "completed",
        "duration": duration,
        **extra_fields
    }})


class ObservabilityHooks:
    """Callbacks fired on state machine and coherence events."""

    def __init__(self):
        self.hooks: Dict[str, List[Callable[..., None]]] = {}
        self.logger = std_logging.getLogger("harness.observability")

    def register_hook(self, event_type: str, callback: Callable[..., None]) -> None:
        self.hooks.setdefault(event_type, []).append(callback)
        self.logger.debug(f"Registered hook for event: {event_type}")

    def unregister_hook(self, event_type: str, callback: Callable[..., None]) -> None:
        callbacks = self.hooks.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def trigger_hooks(self, event_type: str, **data) -> None:
        """Run every callback for ``event_type``; a failing hook is logged, not raised."""
        for hook in list(self.hooks.get(event_type, [])):
            try:
                hook(**data)
            except Exception as e:
                self.logger.error(f"Hook failed for event {event_type}: {e}")

    def log_workflow_event(self, event_type: str, feature_id: Optional[str] = None, **data) -> None:
        """Log a workflow event and trigger hooks."""
        event_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "feature_id": feature_id,
            **data
        }

        self.logger.info(f"Workflow event: {event_type}", extra={"extra_fields": event_data})

        hook_data = {k: v for k, v in event_data.items() if k != "event_type"}
        self.trigger_hooks(event_type, **hook_data)


observability_hooks = ObservabilityHooks()


def log_error_with_context(error: Exception, context: Dict[str, Any], **extra_fields):
    """Log an error with rich context information."""
    logger = std_logging.getLogger("harness.errors")

    error_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(error).__name__,
        "error_message": str(error),
        "context": context,
        **extra_fields
    }

    logger.error(
        f"Error in {context.get('operation', 'unknown operation')}: {error}",
        extra={"extra_fields": error_data},
        exc_info=error
    )


def log_state_initialized(feature_id: str, total_tasks: int, **extra_fields):
    observability_hooks.log_workflow_event(
        "state_initialized", feature_id=feature_id, total_tasks=total_tasks, **extra_fields
    )


def log_task_advanced(feature_id: str, task_id: str, status: str, **extra_fields):
    observability_hooks.log_workflow_event(
        "task_advanced", feature_id=feature_id, task_id=task_id, status=status, **extra_fields
    )


def log_feature_completed(feature_id: str, total_tasks: int, **extra_fields):
    observability_hooks.log_workflow_event(
        "feature_completed", feature_id=feature_id, total_tasks=total_tasks, **extra_fields
    )


def log_coherence_check(feature_id: str, coherent: bool, violation_count: int, **extra_fields):
    observability_hooks.log_workflow_event(
        "coherence_checked",
        feature_id=feature_id,
        coherent=coherent,
        violation_count=violation_count,
        **extra_fields
    )


def log_state_stored(feature_id: str, path: str, **extra_fields):
    observability_hooks.log_workflow_event("state_stored", feature_id=feature_id, path=path, **extra_fields)


def log_state_cleanup(feature_id: str, archived: bool, **extra_fields):
    observability_hooks.log_workflow_event(
        "state_cleaned_up", feature_id=feature_id, archived=archived, **extra_fields
    )
