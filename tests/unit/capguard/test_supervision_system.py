"""End-to-end tests for SupervisionSystem with fake hardware and consumer."""

import asyncio
import signal
import sys

import psutil
import pytest

from capguard.core.devices.usb_sysfs import UsbSysfs
from capguard.core.errors import PreflightFailed
from capguard.core.health_monitor import MONITOR_NAME
from capguard.core.settings import CaptureSettings
from capguard.core.supervision_system import (
    EXIT_CLEAN,
    EXIT_PREFLIGHT_FAILED,
    EXIT_THRESHOLD_EXCEEDED,
    SupervisionSystem,
)
from tests.infrastructure.mocks.capture_mocks import (
    FakeConsumerRunner,
    RecordingHardware,
    ScriptedCommandRunner,
    ScriptedProbe,
)


class ReadyLoopback:
    async def ensure(self):
        return True


@pytest.fixture
def settings(tmp_path):
    basedir = tmp_path / "project"
    basedir.mkdir()
    return CaptureSettings(
        device="/dev/video0",
        require_device=False,
        basedir=basedir,
        bridge_command=[sys.executable, "-c", "import time; time.sleep(30)"],
        bridge_grace_period=0.2,
        bridge_poll_interval=0.05,
        bridge_restart_backoff=0.01,
        bridge_stop_timeout=1.0,
        check_interval=0.05,
        recovery_delay=0.0,
        escalation_cooldown=0.0,
        consumer_command=sys.executable,
        consumer_log_dir=tmp_path / "obs-logs",
        state_dir=tmp_path / "state",
        log_dir=tmp_path / "logs",
    )


def _system(settings, tmp_path, consumer):
    return SupervisionSystem(
        settings,
        hardware=RecordingHardware(),
        probe=ScriptedProbe(),
        commands=ScriptedCommandRunner(),
        consumer_runner=consumer,
        loopback=ReadyLoopback(),
        sysfs=UsbSysfs(tmp_path / "sys"),
    )


def _assert_clean(system):
    assert system.registry.live_handles() == []
    assert list(system.settings.state_dir.glob("*.json")) == []
    assert system.health_monitor is None or not system.health_monitor.is_running()
    assert system.bridge is None or not system.bridge.is_alive()


class TestWiring:

    @pytest.mark.asyncio
    async def test_components_for_device_with_loopback(self, settings, tmp_path):
        system = _system(settings, tmp_path, FakeConsumerRunner([0]))
        assert system.bridge is not None
        assert system.health_monitor is not None
        assert system.services == [system.bridge]

    @pytest.mark.asyncio
    async def test_no_device_means_no_bridge_or_monitor(self, settings, tmp_path):
        settings.device = None
        system = _system(settings, tmp_path, FakeConsumerRunner([0]))
        assert system.bridge is None
        assert system.health_monitor is None
        assert system.repair.services == []

    @pytest.mark.asyncio
    async def test_managed_units_join_the_services(self, settings, tmp_path):
        settings.manage_units = True
        system = _system(settings, tmp_path, FakeConsumerRunner([0]))
        assert [service.name for service in system.services] == [
            "bridge",
            "usb-capture-ffmpeg.service",
            "usb-capture-monitor.service",
        ]

    @pytest.mark.asyncio
    async def test_malformed_vidpid_is_a_preflight_failure(self, settings, tmp_path):
        settings.vidpid = "3188-1000"
        with pytest.raises(PreflightFailed):
            _system(settings, tmp_path, FakeConsumerRunner([0]))


class TestSession:

    @pytest.mark.asyncio
    async def test_clean_consumer_exit(self, settings, tmp_path):
        consumer = FakeConsumerRunner([0])
        system = _system(settings, tmp_path, consumer)

        exit_code = await system.run()

        assert exit_code == EXIT_CLEAN
        assert len(consumer.launches) == 1
        assert system.coordinator.is_complete
        _assert_clean(system)

    @pytest.mark.asyncio
    async def test_bridge_process_is_gone_after_cleanup(self, settings, tmp_path):
        pids = []
        system = None

        def remember_bridge(number, argv):
            pids.append(system.bridge.pid)

        consumer = FakeConsumerRunner([0], on_launch=remember_bridge)
        system = _system(settings, tmp_path, consumer)
        await system.run()

        assert pids and pids[0] is not None
        assert not psutil.pid_exists(pids[0])

    @pytest.mark.asyncio
    async def test_threshold_exceeded(self, settings, tmp_path):
        consumer = FakeConsumerRunner([139, 139, 139, 139])
        system = _system(settings, tmp_path, consumer)

        assert await system.run() == EXIT_THRESHOLD_EXCEEDED
        assert len(consumer.launches) == 4
        _assert_clean(system)

    @pytest.mark.asyncio
    async def test_preflight_failure(self, settings, tmp_path):
        settings.basedir = tmp_path / "missing"
        consumer = FakeConsumerRunner([0])
        system = _system(settings, tmp_path, consumer)

        assert await system.run() == EXIT_PREFLIGHT_FAILED
        assert consumer.launches == []
        _assert_clean(system)

    @pytest.mark.asyncio
    async def test_signal_stops_everything(self, settings, tmp_path):
        consumer = FakeConsumerRunner([], block=True)
        system = _system(settings, tmp_path, consumer)

        async def send_signal():
            while not consumer.launches:
                await asyncio.sleep(0.01)
            system._handle_signal(signal.SIGTERM)

        sender = asyncio.get_running_loop().create_task(send_signal())
        exit_code = await system.run()
        await sender

        assert exit_code == 128 + signal.SIGTERM
        assert consumer.terminated >= 1
        assert system.coordinator.source == "signal SIGTERM"
        _assert_clean(system)

    @pytest.mark.asyncio
    async def test_signal_during_bridge_startup_skips_consumer(self, settings, tmp_path):
        settings.bridge_grace_period = 0.5
        consumer = FakeConsumerRunner([0])
        system = _system(settings, tmp_path, consumer)

        async def send_signal():
            await asyncio.sleep(0.1)
            system._handle_signal(signal.SIGTERM)

        sender = asyncio.get_running_loop().create_task(send_signal())
        exit_code = await system.run()
        await sender

        assert exit_code == 128 + signal.SIGTERM
        assert consumer.launches == []
        assert system.coordinator.source == "signal SIGTERM"
        _assert_clean(system)

    @pytest.mark.asyncio
    async def test_health_monitor_not_restarted_after_shutdown(self, settings, tmp_path):
        system = _system(settings, tmp_path, FakeConsumerRunner([0]))
        await system.run()

        system._restart_health_monitor()

        assert not system.health_monitor.is_running()

    @pytest.mark.asyncio
    async def test_dead_health_monitor_restarted_between_crashes(self, settings, tmp_path):
        system = None

        def kill_monitor(number, argv):
            if number == 1:
                system.health_monitor._task.cancel()

        consumer = FakeConsumerRunner([139, 0], on_launch=kill_monitor)
        system = _system(settings, tmp_path, consumer)

        restarts = []
        original = system._restart_health_monitor

        def tracking_restart():
            restarts.append(system.registry.is_alive(MONITOR_NAME))
            original()

        system.consumer_monitor.restart_companion = tracking_restart

        assert await system.run() == EXIT_CLEAN
        assert restarts == [False]
        _assert_clean(system)

    @pytest.mark.asyncio
    async def test_cleanup_runs_once(self, settings, tmp_path):
        system = _system(settings, tmp_path, FakeConsumerRunner([0]))
        await system.run()
        await system.cleanup()
        assert system.coordinator.source == "session end"
