"""Prompt templates for phase sessions.

Every prompt the orchestrator sends lives in ``templates.yaml`` (next to
this module) and is loaded by :class:`PromptCatalog`.
"""

from rpi_orchestrator.prompts.catalog import PromptCatalog, get_catalog

__all__ = ["PromptCatalog", "get_catalog"]
