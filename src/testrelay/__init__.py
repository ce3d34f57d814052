# src/testrelay/__init__.py

"""
testrelay: test discovery and streaming execution.
"""
