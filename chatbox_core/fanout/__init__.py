"""Fanout orchestration (one question, many backend targets)."""

from .orchestrator import FanoutOrchestrator, build_target_session

__all__ = ["FanoutOrchestrator", "build_target_session"]
