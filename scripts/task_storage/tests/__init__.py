"""Test suite for the task storage layer.

This package contains tests for the binary codec, page memory, the stable,
JSON and SQLite backends, and protocol compliance across all of them.
"""
