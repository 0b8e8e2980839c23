"""Unit test fixtures for isolated, fast test execution.

Every fixture here replaces a kernel or process boundary with a recording
fake from ``tests.infrastructure.mocks.capture_mocks`` so the supervision
loops can run without a capture device, sudo or systemd.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from capguard.core.devices.identity import DeviceIdentity
from capguard.core.process_registry import ProcessRegistry
from capguard.core.settings import RecoveryPolicy
from tests.infrastructure.mocks.capture_mocks import (
    FakeService,
    RecordingHardware,
    SleepRecorder,
    build_usb_sysfs_tree,
)


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Directory for liveness records and streaming.json."""
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def registry(state_dir: Path) -> ProcessRegistry:
    return ProcessRegistry(state_dir)


@pytest.fixture
def hardware() -> RecordingHardware:
    return RecordingHardware()


@pytest.fixture
def bridge_service() -> FakeService:
    return FakeService("bridge")


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def identity() -> DeviceIdentity:
    return DeviceIdentity(vendor_id="3188", product_id="1000", node_path="/dev/video0")


@pytest.fixture
def policy() -> RecoveryPolicy:
    """Production thresholds; intervals only matter through the sleeper."""
    return RecoveryPolicy()


@pytest.fixture
def sysfs_root(tmp_path: Path) -> Path:
    return build_usb_sysfs_tree(tmp_path)
