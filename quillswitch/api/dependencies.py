"""Orchestrator instance shared by the API routes."""

import json
import logging
import os
from typing import Optional

from ..orchestrator import MigrationOrchestrator
from ..services.connections import ConnectionRegistry
from ..services.field_mapper import FieldMapper
from ..services.llm_inference import LLMMappingAdvisor
from ..storage import JsonFileMigrationStore, MigrationStore

logger = logging.getLogger(__name__)

_orchestrator: Optional[MigrationOrchestrator] = None


def build_advisor() -> Optional[LLMMappingAdvisor]:
    """
    Build the AI mapping advisor from the environment.

    ``QUILLSWITCH_LLM_PROVIDER`` (openai, anthropic or google) turns it on;
    ``QUILLSWITCH_LLM_MODEL`` overrides the provider's default model. The
    API key comes from the provider's usual variable, e.g. ``OPENAI_API_KEY``.
    """
    provider = os.getenv("QUILLSWITCH_LLM_PROVIDER")
    if not provider:
        return None
    advisor = LLMMappingAdvisor(provider=provider.lower(), model=os.getenv("QUILLSWITCH_LLM_MODEL"))
    logger.info(f"AI mapping suggestions enabled ({advisor.provider}, {advisor.model})")
    return advisor


def build_orchestrator() -> MigrationOrchestrator:
    """
    Build an orchestrator from the environment.

    ``QUILLSWITCH_CONNECTIONS_FILE`` points to a JSON object of connection
    configs (same shape as the CLI config's ``connections``) and
    ``QUILLSWITCH_STATE_FILE`` enables JSON persistence of migration state.
    See ``build_advisor`` for AI mapping settings.
    """
    connections = {}
    connections_file = os.getenv("QUILLSWITCH_CONNECTIONS_FILE")
    if connections_file:
        with open(connections_file) as f:
            connections = json.load(f)

    state_file = os.getenv("QUILLSWITCH_STATE_FILE")
    store = JsonFileMigrationStore(state_file) if state_file else MigrationStore()

    logger.info(f"API orchestrator configured with {len(connections)} connections")
    return MigrationOrchestrator(
        ConnectionRegistry.from_config(connections),
        store=store,
        field_mapper=FieldMapper(store, advisor=build_advisor()),
    )


def configure_orchestrator(orchestrator: MigrationOrchestrator) -> None:
    """Install the orchestrator used by the API."""
    global _orchestrator
    _orchestrator = orchestrator


def get_orchestrator() -> MigrationOrchestrator:
    """Return the configured orchestrator, building one on first use."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator


def reset_orchestrator() -> None:
    global _orchestrator
    if _orchestrator is not None and _orchestrator.scheduler is not None:
        _orchestrator.scheduler.shutdown()
    _orchestrator = None
