# Graphs package
from .validation_graph import Accepted, Rejected, ValidationEngine
from .review_graph import ReviewLoop, ReviewOutcome

__all__ = ["Accepted", "Rejected", "ValidationEngine", "ReviewLoop", "ReviewOutcome"]
