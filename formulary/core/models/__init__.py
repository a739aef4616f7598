"""
Domain models — formula files, descriptors and install run records.

    from formulary.core.models import Formula, ArtifactDescriptor, InstallResult
"""

from formulary.core.models.formula import (
    ArtifactDescriptor,
    BuildSpec,
    Dependency,
    Formula,
    HeadRef,
    SmokeTestSpec,
    VersionEntry,
)
from formulary.core.models.run import (
    BuildContext,
    InstallResult,
    RunState,
    StepRecord,
)

__all__ = [
    # formula.py
    "ArtifactDescriptor",
    "BuildSpec",
    "Dependency",
    "Formula",
    "HeadRef",
    "SmokeTestSpec",
    "VersionEntry",
    # run.py
    "BuildContext",
    "InstallResult",
    "RunState",
    "StepRecord",
]
