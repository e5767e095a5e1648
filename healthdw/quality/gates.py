"""Integrity Gate - Decision maker for pass/fail before a load run."""

import logging
from dataclasses import dataclass

from ..errors import IntegrityError
from .validators import ValidationReport

logger = logging.getLogger(__name__)


@dataclass
class GateResult:
    """Integrity gate result."""
    status: str  # 'success', 'warning', 'failed'
    errors: int
    warnings: int
    message: str


class IntegrityGate:
    """Blocks loading when a validation report has errors."""

    def evaluate(self, report: ValidationReport) -> GateResult:
        """Evaluate a validation report. Raises IntegrityError when errors are present."""
        errors, warnings = len(report.errors), len(report.warnings)

        if errors:
            kinds = sorted({i.issue_kind for i in report.errors})
            message = f'{errors} integrity errors ({", ".join(kinds)})'
            logger.error(f'Integrity gate failed: {message}')
            raise IntegrityError(message, report=report)

        if warnings:
            for issue in report.warnings:
                logger.warning(f'{issue.table}: {issue.issue_kind} - {issue.detail}')
            return GateResult('warning', 0, warnings, f'Warning: {warnings} integrity warnings')

        logger.info('Integrity gate passed')
        return GateResult('success', 0, 0, 'Passed: no integrity issues')
