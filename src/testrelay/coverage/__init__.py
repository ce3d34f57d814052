#
# src/testrelay/coverage/__init__.py
#
"""
Converts the reporter's raw coverage artifact into per-file coverage records.
"""

from .ingest import convert_file, ingest, is_vendored, load_artifact
from .models import BranchCoverage, DeclarationCoverage, FileCoverage, StatementCoverage

__all__ = [
    "BranchCoverage",
    "DeclarationCoverage",
    "FileCoverage",
    "StatementCoverage",
    "convert_file",
    "ingest",
    "is_vendored",
    "load_artifact",
]
