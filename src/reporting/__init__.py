"""Build reports."""

from reporting.report import BuildReport, NodeOutcome

__all__ = ['BuildReport', 'NodeOutcome']
