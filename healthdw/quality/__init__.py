"""Quality module - Integrity validation and gates."""

from .validators import IntegrityValidator, IntegrityIssue, ValidationReport, ERROR, WARNING
from .gates import IntegrityGate, GateResult
from .metrics_logger import MetricsLogger

__all__ = [
    'IntegrityValidator', 'IntegrityIssue', 'ValidationReport', 'ERROR', 'WARNING',
    'IntegrityGate', 'GateResult',
    'MetricsLogger'
]
