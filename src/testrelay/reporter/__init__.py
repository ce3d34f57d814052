#
# src/testrelay/reporter/__init__.py
#
"""
Reporter side of the event channel: the client used inside test processes,
the pytest plugin built on it, and the coverage artifact writer.
"""

from .client import EventReporter, executed_under_runner, file_uri, is_coverage_run

__all__ = ["EventReporter", "executed_under_runner", "file_uri", "is_coverage_run"]
