"""Iteration orchestrator exports."""

from .loop import IterationOrchestrator, LoopConfig, LoopError, PlanNotFoundError

__all__ = ["IterationOrchestrator", "LoopConfig", "LoopError", "PlanNotFoundError"]
