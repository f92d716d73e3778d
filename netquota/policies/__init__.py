"""Quota window resolution and enforcement policy."""

from netquota.policies.device_manager import DeviceManager
from netquota.policies.enforcer import EnforcementEngine, effective_limit, evaluate_limits
from netquota.policies.schedule import resolve_active_block, validate_schedules

__all__ = [
    "DeviceManager",
    "EnforcementEngine",
    "effective_limit",
    "evaluate_limits",
    "resolve_active_block",
    "validate_schedules",
]
