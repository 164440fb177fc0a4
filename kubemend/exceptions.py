"""
Exception types for the kubemend operator.

Errors are split by how the caller must react: configuration errors are
surfaced and never retried, transient cluster errors are retried with
backoff, terminal cluster errors fail the action immediately.
"""

import asyncio
from typing import Any, Dict, Optional

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

# Status codes that are worth another attempt.
TRANSIENT_STATUS_CODES = frozenset({409, 429, 500, 502, 503, 504})


class KubeMendError(Exception):
    """Base exception class for kubemend."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} (Context: {context_str})"
        return self.message


class ConfigurationError(KubeMendError):
    """Raised when a policy, template or setting is invalid."""
    pass


class ClusterError(KubeMendError):
    """Raised when a Kubernetes API call fails."""

    def __init__(self, message: str, status: Optional[int] = None,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.status = status


class TransientClusterError(ClusterError):
    """Conflict, throttling, server-side or timeout failures. Retryable."""
    pass


class TerminalClusterError(ClusterError):
    """Not found, forbidden or invalid request. Never retried."""
    pass


class MetricsError(KubeMendError):
    """Raised when metrics cannot be collected for a target."""
    pass


class AnalyzerError(KubeMendError):
    """Raised when the AI analyzer returns an unusable answer."""
    pass


class InvalidTransitionError(KubeMendError):
    """Raised on an illegal HealingAction phase change."""
    pass


def classify_api_exception(exc: BaseException, operation: str = "") -> ClusterError:
    """Map a client-side failure onto the transient/terminal taxonomy."""
    context = {"operation": operation} if operation else {}

    if isinstance(exc, ClusterError):
        return exc

    if isinstance(exc, ApiException):
        status = exc.status
        reason = exc.reason or "API error"
        if status in TRANSIENT_STATUS_CODES:
            return TransientClusterError(f"{reason} ({status})", status=status, context=context)
        return TerminalClusterError(f"{reason} ({status})", status=status, context=context)

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, Urllib3HTTPError)):
        return TransientClusterError(f"API call failed: {type(exc).__name__}", context=context)

    return TerminalClusterError(f"Unexpected API failure: {exc}", context=context)


class ErrorContext:
    """Context manager attaching operation details to kubemend errors."""

    def __init__(self, operation: str, component: str = "kubemend"):
        self.operation = operation
        self.component = component
        self.context = {}

    def add_context(self, **kwargs) -> 'ErrorContext':
        self.context.update(kwargs)
        return self

    def __enter__(self) -> 'ErrorContext':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            return False

        if isinstance(exc_val, KubeMendError):
            exc_val.context.update({
                'operation': self.operation,
                'component': self.component,
                **self.context
            })

        return False
