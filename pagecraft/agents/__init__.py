# Agents package
from .intent_classifier import IntentClassifierAgent, IntentResult
from .generator import GenerationGateway
from .validator import SnapshotValidator, ValidationReport
from .visual_reviewer import VisualReviewerAgent

__all__ = [
    "IntentClassifierAgent",
    "IntentResult",
    "GenerationGateway",
    "SnapshotValidator",
    "ValidationReport",
    "VisualReviewerAgent",
]
