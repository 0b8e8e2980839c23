"""Unit tests for CaptureSettings layering and ConfigManager parsing."""

from pathlib import Path

import pytest

from capguard.core.config_manager import ConfigManager
from capguard.core.errors import PreflightFailed
from capguard.core.settings import CaptureSettings, RecoveryPolicy


@pytest.fixture
def config_files(tmp_path):
    project = tmp_path / "config.txt"
    system = tmp_path / "usb-capture"
    return project, system


class TestConfigManager:

    def test_parses_key_values_comments_and_exports(self, tmp_path):
        path = tmp_path / "config.txt"
        path.write_text(
            "# comment\n"
            "device = /dev/video0\n"
            "export USB_CAPTURE_VIDPID=\"3188:1000\"\n"
            "crash_threshold = 5  # inline\n"
            "not a pair\n",
            encoding="utf-8",
        )
        values = ConfigManager().read_config(path)
        assert values == {
            "device": "/dev/video0",
            "USB_CAPTURE_VIDPID": "3188:1000",
            "crash_threshold": "5",
        }

    def test_missing_file_is_empty(self, tmp_path):
        assert ConfigManager().read_config(tmp_path / "none.txt") == {}

    @pytest.mark.asyncio
    async def test_async_read_matches_sync(self, tmp_path):
        path = tmp_path / "config.txt"
        path.write_text("fps = 60\nauto_resume = false\n", encoding="utf-8")
        manager = ConfigManager()
        assert await manager.read_config_async(path) == manager.read_config(path)

    def test_layered_later_wins(self, tmp_path):
        first = tmp_path / "a.txt"
        second = tmp_path / "b.txt"
        first.write_text("fps = 30\nresolution = 1920x1080\n")
        second.write_text("fps = 60\n")
        assert ConfigManager().read_layered(first, second) == {"fps": "60", "resolution": "1920x1080"}

    def test_typed_getters(self):
        manager = ConfigManager()
        config = {"a": "yes", "b": "7", "c": "2.5", "d": "seven"}
        assert manager.get_bool(config, "a") is True
        assert manager.get_int(config, "b") == 7
        assert manager.get_float(config, "c") == 2.5
        assert manager.get_int(config, "d", 3) == 3
        assert manager.get_str(config, "missing", "x") == "x"


class TestCaptureSettings:

    def test_defaults(self):
        settings = CaptureSettings()
        assert settings.check_interval == 2.0
        assert settings.bridge_poll_interval == 5.0
        assert settings.bridge_restart_backoff == 2.0
        assert settings.bridge_grace_period == 3.0
        assert settings.recovery_delay == 30.0
        assert settings.escalation_cooldown == 30.0
        assert settings.crash_threshold == 3
        assert settings.max_repair_attempts == 3
        assert settings.auto_resume is True

    def test_policy_mirrors_settings(self):
        policy = CaptureSettings(crash_threshold=5, max_repair_attempts=2).policy
        assert policy == RecoveryPolicy(max_repair_attempts=2, crash_threshold=5)

    def test_from_mapping_coerces_types(self):
        settings = CaptureSettings.from_mapping({
            "fps": "60",
            "auto_resume": "false",
            "recovery_delay": "12.5",
            "consumer_args": "--scene 'Main Stage' --verbose",
            "basedir": "/opt/capture",
            "hub_port": "  ",
        })
        assert settings.fps == 60
        assert settings.auto_resume is False
        assert settings.recovery_delay == 12.5
        assert settings.consumer_args == ["--scene", "Main Stage", "--verbose"]
        assert settings.basedir == Path("/opt/capture")
        assert settings.hub_port is None

    def test_environment_keys_map_onto_fields(self):
        settings = CaptureSettings.from_mapping({"USB_CAPTURE_VIDEO": "/dev/video2", "USB_CAPTURE_HDR_MODE": "0"})
        assert settings.device == "/dev/video2"
        assert settings.hdr_mode == 0

    def test_unknown_keys_ignored(self):
        assert CaptureSettings.from_mapping({"bogus": "1", "PATH": "/usr/bin"}) == CaptureSettings()

    def test_vidpid_is_normalised(self):
        settings = CaptureSettings.from_mapping({"USB_CAPTURE_VIDPID": " 3188:10AB "})
        assert settings.vidpid == "3188:10ab"

    @pytest.mark.parametrize("bad", ["3188-1000", "3188:10000", "usb"])
    def test_malformed_vidpid_from_environment_fails_preflight(self, bad, config_files):
        with pytest.raises(PreflightFailed) as excinfo:
            CaptureSettings.load(env={"USB_CAPTURE_VIDPID": bad}, config_paths=config_files)
        assert bad in str(excinfo.value)
        assert any("vvvv:pppp" in hint for hint in excinfo.value.hints)

    def test_malformed_vidpid_in_config_file_fails_preflight(self, config_files):
        project, system = config_files
        system.write_text("USB_CAPTURE_VIDPID=3188_1000\n")
        with pytest.raises(PreflightFailed):
            CaptureSettings.load(env={}, config_paths=(project, system))

    def test_precedence_file_system_env_cli(self, config_files):
        project, system = config_files
        project.write_text("device = /dev/video0\nfps = 30\nresolution = 1920x1080\nhdr_mode = 1\n")
        system.write_text("USB_CAPTURE_VIDEO=/dev/video1\nUSB_CAPTURE_FPS=50\nUSB_CAPTURE_HDR_MODE=0\n")
        env = {"USB_CAPTURE_FPS": "60", "USB_CAPTURE_HDR_MODE": "2"}

        settings = CaptureSettings.load({"hdr_mode": 3, "device": None}, env=env, config_paths=(project, system))

        assert settings.resolution == "1920x1080"
        assert settings.device == "/dev/video1"
        assert settings.fps == 60
        assert settings.hdr_mode == 3

    def test_bridge_command_defaults_to_feed_script(self, tmp_path):
        settings = CaptureSettings(basedir=tmp_path)
        assert settings.resolved_bridge_command() == ["bash", str(tmp_path / "ffmpeg" / "feed.sh")]
        custom = CaptureSettings.from_mapping({"bridge_command": "/usr/local/bin/bridge --fast"})
        assert custom.resolved_bridge_command() == ["/usr/local/bin/bridge", "--fast"]

    def test_bridge_needs_device_and_loopback(self):
        assert CaptureSettings(device="/dev/video0").bridge_enabled()
        assert not CaptureSettings(device="/dev/video0", use_loopback=False).bridge_enabled()
        assert not CaptureSettings().bridge_enabled()

    def test_units(self):
        assert CaptureSettings().units() == ["usb-capture-ffmpeg.service", "usb-capture-monitor.service"]
