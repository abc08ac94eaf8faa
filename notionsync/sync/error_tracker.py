"""
Centralized Error Tracking and Reporting for the Sync Module.

Partial success is the normal outcome of a large sync: a handful of pages fail
to fetch, a few images cannot be downloaded, some links point at pages that
were never shared with the integration. This module keeps those failures as
individual, per-item records instead of collapsing them into one aggregate
"sync failed" flag.

Key Features:
- Custom Exception Classes: one per failure class of the sync pipeline
  (fetch, conversion, persist, media, configuration, view configuration).
- ErrorTracker: a thread-safe aggregate of everything that went wrong during
  a run, shared by the orchestrator and the scheduler workers.
- Per-item Reports: failures grouped by category (node, media, link,
  hierarchy, job) with the external id that caused them.
- Severity Levels: WARNING, ERROR, CRITICAL.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Dict, Any

class ErrorSeverity(Enum):
    """
    Defines the severity of an error.
    """
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ErrorCategory(str, Enum):
    """What kind of item an error is attached to."""
    NODE = "node"
    MEDIA = "media"
    LINK = "link"
    HIERARCHY = "hierarchy"
    JOB = "job"


@dataclass
class SyncError:
    """
    A structured object representing a single error that occurred during the sync process.
    """
    message: str
    external_id: Optional[str] = None
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.NODE
    details: Dict[str, Any] = field(default_factory=dict)
    recovery_suggestion: Optional[str] = None

    def to_dict(self):
        return {
            "message": self.message,
            "external_id": self.external_id,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recovery_suggestion": self.recovery_suggestion
        }

# Custom Exception Classes
class SyncException(Exception):
    """Base class for all custom sync exceptions."""
    retryable = False
    category = ErrorCategory.NODE

    def __init__(self, message: str, external_id: Optional[str] = None, recovery_suggestion: Optional[str] = None):
        self.message = message
        self.external_id = external_id
        self.recovery_suggestion = recovery_suggestion
        super().__init__(self.message)

class ConfigurationError(SyncException):
    """Indicates an invalid sync configuration."""
    pass

class FetchError(SyncException):
    """The remote content source could not deliver a node, its children or its rows."""
    retryable = True

class RateLimitedError(FetchError):
    """The remote source asked us to back off. Distinct from a hard fetch failure."""

    def __init__(self, message: str, external_id: Optional[str] = None, retry_after: Optional[float] = None):
        super().__init__(message, external_id=external_id,
                         recovery_suggestion="Lower max_workers or raise batch_stagger_seconds")
        self.retry_after = retry_after

class ConversionError(SyncException):
    """A block payload is malformed. Always recovered through an error fragment."""
    pass

class PersistError(SyncException):
    """The target content store rejected a write. Retried at the job level."""
    retryable = True

class MediaDownloadError(SyncException):
    """A media object could not be downloaded after all retries."""
    retryable = True
    category = ErrorCategory.MEDIA

class MediaRateLimitedError(MediaDownloadError):
    """The media host asked us to back off."""

    def __init__(self, message: str, external_id: Optional[str] = None, retry_after: Optional[float] = None):
        super().__init__(message, external_id=external_id,
                         recovery_suggestion="Lower max_workers or re-sync once the media host recovers")
        self.retry_after = retry_after

class CycleDetected(SyncException):
    """A node was reached twice during one hierarchy walk. Reported as a warning only."""
    category = ErrorCategory.HIERARCHY

class ViewConfigError(SyncException):
    """A filter or sort does not fit the property it targets."""
    pass

class InvalidTransition(SyncException):
    """The node state machine was asked for a transition it does not allow."""
    pass


class ErrorTracker:
    """
    A centralized tracker for aggregating errors during a sync run.

    Shared between scheduler worker threads, so every access goes through a lock.
    """
    def __init__(self):
        self.errors: List[SyncError] = []
        self._lock = threading.Lock()

    def report(self, message: str, external_id: Optional[str] = None, severity: ErrorSeverity = ErrorSeverity.ERROR,
               category: ErrorCategory = ErrorCategory.NODE, details: Optional[Dict[str, Any]] = None,
               recovery_suggestion: Optional[str] = None):
        """
        Report a new error.
        """
        error = SyncError(
            message=message,
            external_id=external_id,
            severity=severity,
            category=category,
            details=details or {},
            recovery_suggestion=recovery_suggestion
        )
        with self._lock:
            self.errors.append(error)

    def report_exception(self, exc: SyncException, severity: ErrorSeverity = ErrorSeverity.ERROR,
                         details: Optional[Dict[str, Any]] = None):
        """
        Report an error from a SyncException.
        """
        self.report(
            message=exc.message,
            external_id=exc.external_id,
            severity=severity,
            category=exc.category,
            details=dict(details or {}, error_type=type(exc).__name__),
            recovery_suggestion=exc.recovery_suggestion
        )

    def get_errors(self, min_severity: ErrorSeverity = ErrorSeverity.WARNING,
                   category: Optional[ErrorCategory] = None) -> List[SyncError]:
        """
        Get all errors at or above a certain severity level, optionally for one category.
        """
        severity_map = {
            ErrorSeverity.WARNING: 1,
            ErrorSeverity.ERROR: 2,
            ErrorSeverity.CRITICAL: 3
        }
        min_level = severity_map.get(min_severity, 1)
        with self._lock:
            errors = list(self.errors)
        return [
            e for e in errors
            if severity_map.get(e.severity, 1) >= min_level and (category is None or e.category == category)
        ]

    def has_critical_errors(self) -> bool:
        """
        Check if any critical errors have been reported.
        """
        return any(e.severity == ErrorSeverity.CRITICAL for e in self.get_errors())

    def clear(self) -> None:
        with self._lock:
            self.errors = []

    def generate_report(self) -> Dict[str, Any]:
        """
        Generate a summary report of all errors, grouped per item category.
        """
        errors = self.get_errors()
        critical = len(self.get_errors(ErrorSeverity.CRITICAL))
        at_least_error = len(self.get_errors(ErrorSeverity.ERROR))
        by_category: Dict[str, List[Dict[str, Any]]] = {c.value: [] for c in ErrorCategory}
        for e in errors:
            by_category[e.category.value].append(e.to_dict())
        return {
            "total_errors": len(errors),
            "critical_count": critical,
            "error_count": at_least_error - critical,
            "warning_count": len(errors) - at_least_error,
            "items": by_category,
            "errors": [e.to_dict() for e in errors]
        }
