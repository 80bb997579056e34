"""Operation actions package.

This package contains the three deployment pipelines and their helpers:
- install: Partition a disk and deploy Active, Passive and Recovery
- upgrade: Replace Active (keeping it as Passive) or Recovery
- reset: Redeploy State from the Recovery system
- hooks: Named lifecycle stages and Python hook sets
- cleanup: Undo stack shared by the pipelines
"""

from .cleanup import CleanupStack
from .hooks import HookRunner, run_hooks
from .install import InstallAction
from .reset import ResetAction
from .upgrade import UpgradeAction


__all__ = [
    # Pipelines
    "InstallAction",
    "UpgradeAction",
    "ResetAction",
    # Helpers
    "CleanupStack",
    "HookRunner",
    "run_hooks",
]
