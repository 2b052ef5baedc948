"""
Pytest configuration for the synvm test suite.

    python -m pytest                 # full suite
    python -m pytest -m "not slow"   # skip long-running programs
"""

import logging


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "slow: runs a long program (tens of thousands of instructions)")


def pytest_runtest_setup(item):
    # cli.main() calls logging.basicConfig; keep each test's log level clean
    logging.getLogger().setLevel(logging.WARNING)
