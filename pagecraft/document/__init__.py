# Live document collaborators
from .base import LiveDocument, SyntaxReport

__all__ = ["LiveDocument", "SyntaxReport"]
