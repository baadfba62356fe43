"""Domux pipelines.

- Generation: validated AI drafting of a session's estimate
- Finalization: certification, storage and persistence of an edited estimate
"""

from pipeline.finalization import FinalizationOrchestrator, FinalizationRequest, apply_edits
from pipeline.generation import generate_for_session

__all__ = [
    "FinalizationOrchestrator",
    "FinalizationRequest",
    "apply_edits",
    "generate_for_session",
]
