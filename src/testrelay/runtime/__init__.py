# src/testrelay/runtime/__init__.py

"""
Execution runtime. Submodules are imported directly (``testrelay.runtime.engine``
and so on) so that the reporter, which only needs the port database, does not
pull in the engine inside test processes.
"""
