# src/testrelay/cli/__init__.py
