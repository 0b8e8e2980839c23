"""Shared pytest configuration and fixtures for the capguard test suite."""

import sys
from pathlib import Path

import pytest

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "hardware: mark test as requiring a physical capture device"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


def pytest_addoption(parser):
    """Add custom command-line options."""
    parser.addoption(
        "--run-hardware",
        action="store_true",
        default=False,
        help="Run tests that require a physical capture device",
    )


def pytest_collection_modifyitems(config, items):
    """Skip hardware tests unless --run-hardware is specified."""
    if config.getoption("--run-hardware"):
        return

    skip_hardware = pytest.mark.skip(reason="Need --run-hardware option to run")
    for item in items:
        if "hardware" in item.keywords:
            item.add_marker(skip_hardware)


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture(autouse=True)
def _isolate_capguard_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the operator's USB_CAPTURE_* settings out of every test."""
    for key in (
        "USB_CAPTURE_VIDEO",
        "USB_CAPTURE_VIDPID",
        "USB_CAPTURE_HUB",
        "USB_CAPTURE_RES",
        "USB_CAPTURE_FPS",
        "USB_CAPTURE_FORMAT",
        "USB_CAPTURE_HDR_MODE",
        "CAPGUARD_STATE_DIR",
        "CAPGUARD_LOG_DIR",
    ):
        monkeypatch.delenv(key, raising=False)
