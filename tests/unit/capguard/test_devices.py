"""Unit tests for USB sysfs lookups, device identity and the health probe."""

import os

import pytest

from capguard.core.devices.identity import DeviceIdentity, find_by_id_alias, parse_vidpid
from capguard.core.devices.probe import DeviceProbe, HealthState
from capguard.core.devices.usb_sysfs import UsbSysfs
from capguard.core.errors import DeviceAbsent, DeviceUnresponsive
from tests.infrastructure.mocks.capture_mocks import ScriptedCommandRunner, build_usb_sysfs_tree

VIDEO_NAME = "video37"
VIDEO_NODE = f"/dev/{VIDEO_NAME}"


@pytest.fixture
def sysfs(tmp_path):
    return UsbSysfs(build_usb_sysfs_tree(tmp_path, video_name=VIDEO_NAME), usbfs_root=tmp_path / "usbfs")


class TestUsbSysfs:

    def test_find_by_vidpid(self, sysfs, tmp_path):
        info = sysfs.find_by_vidpid("3188", "1000")
        assert info.busid == "1-1.4"
        assert (info.busnum, info.devnum) == (1, 5)
        assert info.usbfs_path(tmp_path / "usbfs") == tmp_path / "usbfs" / "001" / "005"

    def test_vidpid_lookup_is_case_insensitive(self, tmp_path):
        sysfs = UsbSysfs(build_usb_sysfs_tree(tmp_path, vendor_id="1B3F", product_id="A2F0"))
        assert sysfs.find_by_vidpid("1b3f", "a2f0").vidpid == "1b3f:a2f0"

    def test_interfaces_are_not_devices(self, sysfs):
        busids = [info.busid for info in sysfs.iter_devices()]
        assert busids == ["1-1", "1-1.4", "usb1"]

    def test_unknown_device(self, sysfs):
        assert sysfs.find_by_vidpid("dead", "beef") is None
        assert sysfs.find_by_busid("9-9") is None

    def test_from_video_node_walks_up_to_the_device(self, sysfs):
        info = sysfs.from_video_node(VIDEO_NODE)
        assert info.vidpid == "3188:1000"

    def test_from_video_node_unknown(self, sysfs):
        assert sysfs.from_video_node("/dev/video99") is None

    def test_driver_path(self, sysfs):
        assert sysfs.find_by_busid("1-1.4").driver_path().name == "usb"

    def test_missing_tree(self, tmp_path):
        assert list(UsbSysfs(tmp_path / "nothing").iter_devices()) == []


class TestDeviceIdentity:

    def test_parse_vidpid(self):
        assert parse_vidpid("3188:1000") == ("3188", "1000")
        assert parse_vidpid(" 1B3F:A2F0 ") == ("1b3f", "a2f0")
        for bad in ("3188", "3188:10000", "zzzz:1000", ""):
            with pytest.raises(ValueError):
                parse_vidpid(bad)

    def test_vidpid_only(self, sysfs):
        ident = DeviceIdentity.resolve(None, "3188:1000", sysfs)
        assert ident.has_hardware_id
        assert ident.node_path is None
        assert ident.vidpid == "3188:1000"

    def test_node_resolves_vidpid_through_sysfs(self, sysfs):
        ident = DeviceIdentity.resolve(VIDEO_NODE, None, sysfs)
        assert ident.vidpid == "3188:1000"
        assert ident.node_path == VIDEO_NODE

    def test_node_without_usb_parent_watches_only(self, sysfs):
        ident = DeviceIdentity.resolve("/dev/video99", None, sysfs)
        assert not ident.has_hardware_id
        assert ident.vidpid is None

    def test_symlink_device_becomes_alias(self, sysfs, tmp_path):
        node = tmp_path / VIDEO_NAME
        node.touch()
        alias = tmp_path / "usb-Capture-video-index0"
        alias.symlink_to(node)

        ident = DeviceIdentity.resolve(str(alias), "3188:1000", sysfs)
        assert ident.alias_path == str(alias)
        assert ident.node_path == os.path.realpath(node)
        assert ident.resolve_node() == os.path.realpath(node)

    def test_resolve_node_falls_back_when_alias_gone(self, tmp_path):
        ident = DeviceIdentity(node_path="/dev/video0", alias_path=str(tmp_path / "gone"))
        assert ident.resolve_node() == "/dev/video0"

    def test_find_by_id_alias(self, tmp_path):
        by_id = tmp_path / "by-id"
        by_id.mkdir()
        node = tmp_path / "video2"
        node.touch()
        (by_id / "usb-Capture-video-index1").symlink_to(node)
        (by_id / "usb-Capture-video-index0").symlink_to(node)

        assert find_by_id_alias(str(node), by_id) == str(by_id / "usb-Capture-video-index0")
        assert find_by_id_alias(str(tmp_path / "other"), by_id) is None

    def test_describe(self):
        ident = DeviceIdentity("3188", "1000", "/dev/video0", "/dev/v4l/by-id/x")
        assert ident.describe() == "/dev/video0 / 3188:1000 / alias /dev/v4l/by-id/x"


class TestDeviceProbe:

    @pytest.mark.asyncio
    async def test_missing_node_is_absent(self, tmp_path):
        probe = DeviceProbe(ScriptedCommandRunner())
        assert await probe.probe(str(tmp_path / "video0")) == HealthState.ABSENT
        assert await probe.probe(None) == HealthState.ABSENT

    @pytest.mark.asyncio
    async def test_regular_file_is_absent(self, tmp_path):
        node = tmp_path / "video0"
        node.touch()
        with pytest.raises(DeviceAbsent):
            await DeviceProbe(ScriptedCommandRunner()).check(str(node))

    @pytest.mark.asyncio
    async def test_character_device_that_answers_is_healthy(self):
        runner = ScriptedCommandRunner()
        probe = DeviceProbe(runner)
        assert await probe.probe("/dev/null") == HealthState.HEALTHY
        assert runner.commands == [["v4l2-ctl", "-d", "/dev/null", "--get-fmt-video"]]
        assert probe.last_detail == ""

    @pytest.mark.asyncio
    async def test_failed_query_is_unresponsive(self):
        probe = DeviceProbe(ScriptedCommandRunner(failures={"v4l2-ctl": 1}))
        with pytest.raises(DeviceUnresponsive):
            await probe.check("/dev/null")
        assert await probe.probe("/dev/null") == HealthState.UNRESPONSIVE
        assert "/dev/null" in probe.last_detail
