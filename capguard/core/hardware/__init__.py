from .controller import USBDEVFS_RESET, HardwareController, LinuxHardwareController, parse_hub_port

__all__ = ["HardwareController", "LinuxHardwareController", "USBDEVFS_RESET", "parse_hub_port"]
