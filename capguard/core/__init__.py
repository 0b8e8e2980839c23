from .bridge_supervisor import BridgeConfig, BridgeSupervisor
from .consumer_monitor import ConsumerCrashMonitor, ConsumerOutcome, ConsumerRunner
from .health_monitor import DeviceHealthMonitor
from .process_registry import ProcessRegistry
from .repair import RepairController, RepairPlan, RepairReport, build_plan
from .settings import CaptureSettings, RecoveryPolicy
from .shutdown_coordinator import ShutdownCoordinator, get_shutdown_coordinator
from .supervision_system import SupervisionSystem

__all__ = [
    'BridgeConfig',
    'BridgeSupervisor',
    'CaptureSettings',
    'ConsumerCrashMonitor',
    'ConsumerOutcome',
    'ConsumerRunner',
    'DeviceHealthMonitor',
    'ProcessRegistry',
    'RecoveryPolicy',
    'RepairController',
    'RepairPlan',
    'RepairReport',
    'ShutdownCoordinator',
    'SupervisionSystem',
    'build_plan',
    'get_shutdown_coordinator',
]
