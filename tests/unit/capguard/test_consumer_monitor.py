"""Unit tests for the consumer crash monitor and resume controller."""

import asyncio
import sys
from unittest.mock import AsyncMock

import pytest

from capguard.core.consumer_monitor import (
    ConsumerCrashMonitor,
    ConsumerRunner,
    ConsumerState,
    normalize_exit_code,
)
from capguard.core.errors import RecoveryThresholdExceeded
from capguard.core.health_monitor import MONITOR_NAME
from capguard.core.process_registry import TaskHandle
from capguard.core.stream_state import StreamLogInspector, StreamStateStore
from tests.infrastructure.mocks.capture_mocks import FakeConsumerRunner

RESUME = "--startstreaming"


def _streaming_log_writer(log_dir, streaming_launches):
    """Write a consumer log on each launch; listed launches start a stream."""

    def on_launch(number, argv):
        log_dir.mkdir(parents=True, exist_ok=True)
        lines = ["info: OBS starting"]
        if number in streaming_launches:
            lines.append("info: ==== Streaming Start ===============================================")
        (log_dir / f"launch-{number:02d}.txt").write_text("\n".join(lines) + "\n")

    return on_launch


@pytest.fixture
def make_monitor(policy, sleeper, state_dir, tmp_path):
    def factory(exit_codes, streaming_launches=(), **kwargs):
        log_dir = tmp_path / "obs-logs"
        runner = FakeConsumerRunner(exit_codes, on_launch=_streaming_log_writer(log_dir, set(streaming_launches)))
        monitor = ConsumerCrashMonitor(
            runner,
            kwargs.pop("base_args", ["--scene", "Live"]),
            kwargs.pop("policy", policy),
            inspector=StreamLogInspector(log_dir),
            state_store=StreamStateStore(state_dir),
            sleep=sleeper,
            **kwargs,
        )
        return monitor, runner

    return factory


class TestExitCodes:

    def test_signal_codes_are_normalised(self):
        assert normalize_exit_code(-11) == 139
        assert normalize_exit_code(-9) == 137
        assert normalize_exit_code(0) == 0
        assert normalize_exit_code(1) == 1


class TestCrashRecovery:

    @pytest.mark.asyncio
    async def test_clean_exit_stops_without_relaunch(self, make_monitor, sleeper):
        monitor, runner = make_monitor([0])
        outcome = await monitor.run()

        assert outcome.clean is True
        assert outcome.exit_code == 0
        assert len(runner.launches) == 1
        assert sleeper.delays == []
        assert monitor.state == ConsumerState.STOPPED

    @pytest.mark.asyncio
    async def test_streaming_crashes_resume_until_threshold(self, make_monitor, sleeper, policy):
        monitor, runner = make_monitor([139, 139, 139, 139], streaming_launches={1, 2, 3, 4})
        outcome = await monitor.run()

        assert len(runner.launches) == 4
        assert runner.launches[0] == ["--scene", "Live"]
        for argv in runner.launches[1:]:
            assert argv.count(RESUME) == 1

        assert outcome.clean is False
        assert outcome.crash_count == 4
        assert outcome.exit_code == 139
        assert isinstance(outcome.error, RecoveryThresholdExceeded)
        assert monitor.state == ConsumerState.FAILED
        assert sleeper.delays == [policy.recovery_delay] * 3

    @pytest.mark.asyncio
    async def test_crash_while_not_streaming_relaunches_plainly(self, make_monitor):
        monitor, runner = make_monitor([1, 0], streaming_launches=set())
        outcome = await monitor.run()

        assert outcome.clean is True
        assert runner.launches[1] == ["--scene", "Live"]

    @pytest.mark.asyncio
    async def test_auto_resume_disabled(self, make_monitor):
        monitor, runner = make_monitor([139, 0], streaming_launches={1}, auto_resume=False)
        await monitor.run()
        assert RESUME not in runner.launches[1]

    @pytest.mark.asyncio
    async def test_resume_directive_not_duplicated(self, make_monitor):
        monitor, runner = make_monitor([139, 0], streaming_launches={1}, base_args=[RESUME])
        await monitor.run()
        assert runner.launches[1] == [RESUME]

    @pytest.mark.asyncio
    async def test_resume_follows_the_latest_crash_only(self, make_monitor):
        monitor, runner = make_monitor([139, 139, 0], streaming_launches={1})
        await monitor.run()

        assert RESUME in runner.launches[1]
        assert RESUME not in runner.launches[2]

    @pytest.mark.asyncio
    async def test_stream_state_is_persisted(self, make_monitor, state_dir):
        monitor, _ = make_monitor([139, 0], streaming_launches={1})
        await monitor.run()

        store = StreamStateStore(state_dir)
        data = await store.read()
        assert data["streaming"] is True
        assert data["exit_code"] == 139

    @pytest.mark.asyncio
    async def test_threshold_summary_lists_next_steps(self, make_monitor):
        monitor, _ = make_monitor([1, 1, 1, 1], next_steps=["check the cable"])
        outcome = await monitor.run()
        lines = outcome.error.summary_lines()
        assert any("check the cable" in line for line in lines)
        assert "4 times" in lines[0]


class TestCompanionMonitor:

    @pytest.mark.asyncio
    async def test_dead_health_monitor_is_restarted(self, make_monitor, registry):
        restarted = []
        monitor, _ = make_monitor([139, 0], registry=registry, restart_companion=lambda: restarted.append(True))
        await monitor.run()
        assert restarted == [True]

    @pytest.mark.asyncio
    async def test_async_restart_callback_is_awaited(self, make_monitor, registry):
        restart = AsyncMock()
        monitor, _ = make_monitor([139, 0], registry=registry, restart_companion=restart)
        await monitor.run()
        restart.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_live_health_monitor_is_left_alone(self, make_monitor, registry):
        task = asyncio.get_running_loop().create_task(asyncio.Event().wait())
        registry.register(TaskHandle(MONITOR_NAME, task))
        restarted = []
        monitor, _ = make_monitor([139, 0], registry=registry, restart_companion=lambda: restarted.append(True))
        try:
            await monitor.run()
        finally:
            task.cancel()
        assert restarted == []


class TestConsumerRunner:

    @pytest.mark.asyncio
    async def test_exit_code_and_registration(self, registry):
        runner = ConsumerRunner(sys.executable, registry=registry)
        code = await runner.run(["-c", "import sys; sys.exit(3)"])

        assert code == 3
        assert registry.get("consumer") is None

    @pytest.mark.asyncio
    async def test_killed_consumer_reports_signal_code(self):
        runner = ConsumerRunner(sys.executable)
        code = await runner.run(["-c", "import os, signal; os.kill(os.getpid(), signal.SIGKILL)"])
        assert code == 137

    @pytest.mark.asyncio
    async def test_missing_binary_reports_127(self):
        runner = ConsumerRunner("/nonexistent/obs-binary")
        assert await runner.run([]) == 127
