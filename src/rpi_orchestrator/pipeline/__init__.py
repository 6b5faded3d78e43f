"""Phased RPI pipeline: phase table, prompt assembly, artifacts, and the orchestrator.

The orchestrator lives in :mod:`rpi_orchestrator.pipeline.orchestrator`; it is
not re-exported here because session and status modules import the phase
table from this package.
"""

from rpi_orchestrator.pipeline.phases import PHASES, Phase, PhasedConfig
from rpi_orchestrator.pipeline.tracker import RunArtifacts

__all__ = ["PHASES", "Phase", "PhasedConfig", "RunArtifacts"]
