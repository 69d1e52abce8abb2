"""Failure taxonomy for the refinement pipeline.

These are raised at component boundaries and converted into TurnResult
reasons by the RefinementChain; none of them escapes `run_turn`.
An ambiguous request is not an error: it is routed to clarification.
"""


class RefinementError(Exception):
    """Base class for all pipeline failures."""


class GenerationFailed(RefinementError):
    """The generation collaborator failed or its reply could not be repaired."""


class ValidationRejected(RefinementError):
    """A candidate failed structural checks on every allowed attempt."""

    def __init__(self, reasons, attempts: int = 0):
        self.reasons = list(reasons)
        self.attempts = attempts
        super().__init__("; ".join(self.reasons) or "validation rejected")


class ReviewBlocked(RefinementError):
    """The visual reviewer left unsafe or unresolved issues after its retries."""


class CollaboratorTimeout(RefinementError):
    """An external call did not answer within its timeout."""


class ClassificationFailed(RefinementError):
    """The classifier model failed and no lexical rule matched the request."""


class TurnCancelled(RefinementError):
    """The in-flight turn was cancelled between phases.

    Carries the turn's classification, when one was made, so the recorded
    turn keeps its intent.
    """

    def __init__(self, message: str = "Turn was cancelled", intent=None, confidence: float = 0.0):
        self.intent = intent
        self.confidence = confidence
        super().__init__(message)
