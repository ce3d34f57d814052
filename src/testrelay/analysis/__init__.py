#
# src/testrelay/analysis/__init__.py
#
"""
Adapters for the language-analysis collaborator.
"""

from .lsp_client import LanguageServerClient

__all__ = ["LanguageServerClient"]
