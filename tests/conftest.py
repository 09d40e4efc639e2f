"""
Root pytest configuration for the R-Map orchestrator test suite.

This conftest.py provides:
- Layer-based marker registration (unit, layer02)
- Behavior markers (slow, requires_engine)

Test Layer Architecture:
    unit:    Pure functions and data types       [<1s]
    layer02: Internal modules with a fake engine [~10s]  Real subprocesses,
             the engine is a small Python script written to tmp_path
"""

import pytest


def pytest_configure(config):
    """Register all custom markers."""

    # ==========================================================================
    # Layer Markers
    # ==========================================================================
    config.addinivalue_line("markers", "unit: Unit tests - pure functions and types")
    config.addinivalue_line(
        "markers", "layer02: Layer 02 tests - Internal modules (fake engine process)"
    )

    # ==========================================================================
    # Behavior Markers
    # ==========================================================================
    config.addinivalue_line("markers", "slow: Test takes more than a few seconds")
    config.addinivalue_line(
        "markers", "requires_engine: Test needs a real R-Map binary on RMAP_PATH"
    )


def pytest_collection_modifyitems(config, items):
    """
    Auto-apply markers based on test location.

    Tests in layer directories automatically get the corresponding marker.
    """
    for item in items:
        test_path = str(item.fspath)

        if "layer02_internal" in test_path:
            item.add_marker(pytest.mark.layer02)
        elif "unit" in test_path:
            item.add_marker(pytest.mark.unit)
