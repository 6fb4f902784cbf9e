"""
Container Cleanup - Detection and removal of in-container driver software.
"""

from .component_detector import ComponentDetector, ComponentScanReport, ConflictCategory
from .cleanup import CleanupEngine, CleanupResult, StepOutcome
from .package_manager import PackageManager, detect_package_manager

__all__ = [
    "ComponentDetector",
    "ComponentScanReport",
    "ConflictCategory",
    "CleanupEngine",
    "CleanupResult",
    "StepOutcome",
    "PackageManager",
    "detect_package_manager",
]
