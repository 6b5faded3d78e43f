"""RPI Orchestrator - run Research/Plan/Implement phases as fresh agent sessions."""

from importlib.metadata import PackageNotFoundError, version

from rpi_orchestrator.schemas import Finding, PhasedState, Verdict

__all__ = ["Finding", "PhasedState", "Verdict"]

try:
    __version__ = version("rpi-orchestrator")
except PackageNotFoundError:
    __version__ = "0.0.0"
