"""Unit tests for structured logging, custom levels and the shutdown coordinator."""

import logging

import pytest

from capguard.core.errors import RecoveryThresholdExceeded
from capguard.core.logging_config import OK, RECOVERY, configure_logging
from capguard.core.logging_utils import StructuredLogger, ensure_structured_logger, get_module_logger
from capguard.core.recovery import RecoveryCounter
from capguard.core.shutdown_coordinator import (
    ShutdownCoordinator,
    ShutdownState,
    get_shutdown_coordinator,
    reset_shutdown_coordinator,
)


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


class TestLogging:

    def test_custom_level_names(self):
        assert logging.getLevelName(OK) == "OK"
        assert logging.getLevelName(RECOVERY) == "RECOVERY"

    def test_component_prefix_and_levels(self, caplog):
        logger = get_module_logger("BridgeSupervisor")
        with caplog.at_level(logging.DEBUG, logger="capguard"):
            logger.ok("Bridge started (PID: %d)", 42)
            logger.recovery("Restarting")

        assert [record.levelname for record in caplog.records] == ["OK", "RECOVERY"]
        assert caplog.records[0].getMessage() == "[BridgeSupervisor] Bridge started (PID: 42)"
        assert caplog.records[0].name == "capguard.BridgeSupervisor"

    def test_ensure_structured_logger(self):
        plain = logging.getLogger("capguard.Repair")
        wrapped = ensure_structured_logger(plain)
        assert isinstance(wrapped, StructuredLogger)
        assert wrapped.component == "Repair"
        assert ensure_structured_logger(wrapped) is wrapped
        assert ensure_structured_logger(None, fallback_name="X").name == "capguard.X"

    def test_session_file_gets_tagged_lines(self, tmp_path, restore_root_logging):
        log_file = tmp_path / "capguard-test.log"
        configure_logging("info", force=True, console=False, log_file=log_file)
        logger = get_module_logger("ConsumerMonitor")
        logger.recovery("Attempting recovery (crash %d/%d)", 1, 3)
        logger.debug("hidden")
        for handler in logging.getLogger().handlers:
            handler.flush()

        text = log_file.read_text()
        assert "| RECOVERY | capguard.ConsumerMonitor | [ConsumerMonitor] Attempting recovery (crash 1/3)" in text
        assert "hidden" not in text

    def test_unknown_level_rejected(self, restore_root_logging):
        with pytest.raises(ValueError):
            configure_logging("loud", force=True, console=False)


class TestRecoveryCounter:

    def test_exceeded_only_past_bound(self):
        counter = RecoveryCounter(3)
        for _ in range(3):
            counter.increment()
        assert not counter.exceeded
        counter.increment()
        assert counter.exceeded
        counter.reset()
        assert counter.value == 0

    def test_negative_bound(self):
        with pytest.raises(ValueError):
            RecoveryCounter(-1)


def test_threshold_error_summary():
    error = RecoveryThresholdExceeded("OBS", 4, 3, 139, ["lsusb"])
    lines = error.summary_lines()
    assert "exit code 139" in lines[0]
    assert lines[-1] == "  - lsusb"


class TestShutdownCoordinator:

    @pytest.mark.asyncio
    async def test_callbacks_run_once_in_order(self):
        coordinator = ShutdownCoordinator()
        order = []

        async def first():
            order.append("first")

        async def second():
            order.append("second")

        coordinator.register_cleanup(first)
        coordinator.register_cleanup(second)

        await coordinator.initiate_shutdown("test")
        await coordinator.initiate_shutdown("again")
        await coordinator.wait_for_shutdown()

        assert order == ["first", "second"]
        assert coordinator.state == ShutdownState.COMPLETE
        assert coordinator.source == "test"

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_the_rest(self):
        coordinator = ShutdownCoordinator()
        ran = []

        async def broken():
            raise RuntimeError("boom")

        async def after():
            ran.append(True)

        coordinator.register_cleanup(broken)
        coordinator.register_cleanup(after)
        await coordinator.initiate_shutdown("test")

        assert ran == [True]
        assert coordinator.is_complete


def test_global_coordinator_is_shared_until_reset():
    reset_shutdown_coordinator()
    first = get_shutdown_coordinator()
    assert get_shutdown_coordinator() is first
    reset_shutdown_coordinator()
    assert get_shutdown_coordinator() is not first
    reset_shutdown_coordinator()


def test_reconfigure_without_force_only_changes_level(tmp_path, restore_root_logging):
    log_file = tmp_path / "capguard-level.log"
    configure_logging("warning", force=True, console=False, log_file=log_file)
    configure_logging("recovery", log_file=tmp_path / "ignored.log")

    root = logging.getLogger()
    assert root.level == RECOVERY
    assert all(handler.level == RECOVERY for handler in root.handlers)
    assert not (tmp_path / "ignored.log").exists()
