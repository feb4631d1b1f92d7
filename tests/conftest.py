"""Root conftest — shared pytest markers and global settings.

Markers
-------
unit        fast, no network, in-memory or tmp_path SQLite
integration requires Redis and/or a live generator endpoint
slow        expected to take > 5 seconds
"""

from __future__ import annotations

import pytest


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast, no I/O tests")
    config.addinivalue_line("markers", "integration: requires Redis / a live generator")
    config.addinivalue_line("markers", "slow: test is expected to take > 5 s")

