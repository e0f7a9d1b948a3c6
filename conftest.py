"""
Pytest configuration for the Oort test suite.

    python -m pytest                 # everything
    python -m pytest -m "not slow"   # skip the full demo-program runs
"""


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "slow: runs a complete program of tens of thousands of steps")
