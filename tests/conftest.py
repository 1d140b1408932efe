"""Pytest configuration shared by unit and integration tests."""


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers",
        "docker: mark test as requiring a running PostgreSQL server"
    )
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow running"
    )
