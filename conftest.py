"""
Pytest configuration for the Rails emulator test suite.

    python -m pytest                      # everything
    python -m pytest -m "not threaded"    # skip background-run tests
"""


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "threaded: tests that drive a run on a background worker thread")
