"""
Validation Graph - LangGraph implementation of the bounded generate/validate loop.

A candidate never reaches the live document without passing every structural
check. Failed attempts feed their reasons back into the next generation call;
after the attempt budget is spent the loop ends EXHAUSTED and the caller
rolls back.

Flow:
    START → generate → [candidate?] ── no ──→ retry / exhausted / cancelled
                           │
                          yes
                           ↓
                         check → [passed?] ── yes → ACCEPTED → END
                                    └── no → retry (generate) / exhausted → END
"""

from dataclasses import dataclass, field, replace
from operator import add
from typing import Annotated, Any, Dict, List, Literal, Optional, Sequence, TypedDict, Union

from langgraph.graph import END, StateGraph

from ..agents.generator import GenerationGateway
from ..agents.validator import SnapshotValidator
from ..errors import GenerationFailed
from ..session import CodeSnapshot, Intent, LoopState, Session
from ..utils.progress import ProgressReporter


# ============ RESULTS ============

@dataclass
class Accepted:
    snapshot: CodeSnapshot
    attempts: int
    warnings: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def state(self) -> LoopState:
        return LoopState.ACCEPTED


@dataclass
class Rejected:
    reasons: List[str]
    attempts: int
    cancelled: bool = False
    failure_history: List[List[str]] = field(default_factory=list)

    @property
    def state(self) -> LoopState:
        return LoopState.CANCELLED if self.cancelled else LoopState.EXHAUSTED


ValidationOutcome = Union[Accepted, Rejected]


# ============ STATE DEFINITION ============

class ValidationState(TypedDict):
    """State that flows through the validation graph."""
    # Input
    session: Session
    request: str
    intent: Intent
    prior: CodeSnapshot
    history_summary: List[str]
    target_context: Optional[Dict[str, Any]]
    base_corrections: List[str]  # feedback from outside the loop (visual review)

    # Attempt tracking
    candidate: Optional[CodeSnapshot]
    attempt: int
    max_attempts: int
    failure_history: List[List[str]]
    warnings: List[Dict[str, Any]]
    loop_state: LoopState

    messages: Annotated[List[str], add]


class ValidationEngine(ProgressReporter):
    """
    Bounded generate → validate loop.

    The only place in the pipeline that retries generation. Each attempt is
    a fresh, complete candidate; partial success is never accepted.
    """

    MAX_ATTEMPTS = 3

    def __init__(
        self,
        gateway: GenerationGateway,
        validator: SnapshotValidator,
        max_attempts: int = MAX_ATTEMPTS,
        on_progress: Optional[callable] = None,
    ):
        self.gateway = gateway
        self.validator = validator
        self.max_attempts = max(1, min(max_attempts, self.MAX_ATTEMPTS))
        self.on_progress = on_progress

        self.graph = self._build_graph()
        # No checkpointer: sessions hold locks and live documents
        self.compiled_graph = self.graph.compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(ValidationState)

        graph.add_node("generate", self._generate_node)
        graph.add_node("check", self._check_node)

        graph.set_entry_point("generate")

        graph.add_conditional_edges(
            "generate",
            self._should_continue,
            {
                "check": "check",
                "retry": "generate",
                "exhausted": END,
                "cancelled": END,
            }
        )
        graph.add_conditional_edges(
            "check",
            self._should_continue,
            {
                "accepted": END,
                "retry": "generate",
                "exhausted": END,
                "cancelled": END,
            }
        )
        return graph

    # ============ PUBLIC API ============

    def run(
        self,
        session: Session,
        request: str,
        intent: Intent,
        prior: Optional[CodeSnapshot] = None,
        history_summary: Sequence[str] = (),
        target_context: Optional[Dict[str, Any]] = None,
        corrective_context: Sequence[str] = (),
    ) -> ValidationOutcome:
        """Generate and validate until a candidate is accepted or the budget is spent."""
        initial_state: ValidationState = {
            "session": session,
            "request": request,
            "intent": intent,
            "prior": prior if prior is not None else session.current,
            "history_summary": list(history_summary),
            "target_context": target_context,
            "base_corrections": list(corrective_context),
            "candidate": None,
            "attempt": 0,
            "max_attempts": self.max_attempts,
            "failure_history": [],
            "warnings": [],
            "loop_state": LoopState.PENDING,
            "messages": [],
        }

        # Two graph steps per attempt plus slack
        config = {"recursion_limit": self.max_attempts * 2 + 5}
        final_state = self.compiled_graph.invoke(initial_state, config)

        for line in final_state["messages"]:
            self._debug(line)
        return self._outcome(final_state)

    def validate(
        self,
        candidate: CodeSnapshot,
        session: Session,
        intent: Intent = Intent.NEW_FEATURE,
        request: str = "",
        prior: Optional[CodeSnapshot] = None,
    ) -> ValidationOutcome:
        """Single structural pass over an existing candidate, without regeneration."""
        report = self.validator.validate(candidate, session, intent, request, prior)
        if report.passed:
            accepted = replace(candidate, version=session.next_version(), validated=True)
            return Accepted(snapshot=accepted, attempts=1, warnings=report.warnings)
        return Rejected(reasons=report.reasons, attempts=1, failure_history=[report.reasons])

    # ============ NODE IMPLEMENTATIONS ============

    def _generate_node(self, state: ValidationState) -> Dict[str, Any]:
        session = state["session"]
        attempt = state["attempt"] + 1

        if session.cancelled:
            return {"loop_state": LoopState.CANCELLED, "messages": ["cancelled before generation"]}

        self._notify(f"🔄 [Validation] Attempt {attempt}/{state['max_attempts']}")
        try:
            candidate = self.gateway.generate(
                state["request"],
                state["intent"],
                state["prior"],
                state["history_summary"],
                state["target_context"],
                self._corrective_context(state),
            )
        except GenerationFailed as e:
            self._notify(f"⚠️ [Validation] Generation failed: {e}")
            failures = state["failure_history"] + [[f"Generation failed: {e}"]]
            return {
                "attempt": attempt,
                "candidate": None,
                "failure_history": failures,
                "loop_state": self._failed_state(attempt, state["max_attempts"]),
                "messages": [f"attempt {attempt}: generation failed ({e})"],
            }

        if session.cancelled:
            # The call finished after a cancel; its result is discarded
            return {"attempt": attempt, "loop_state": LoopState.CANCELLED, "messages": ["cancelled during generation"]}

        return {
            "attempt": attempt,
            "candidate": candidate,
            "loop_state": LoopState.PENDING,
            "messages": [f"attempt {attempt}: candidate with {len(candidate.targets)} target(s)"],
        }

    def _check_node(self, state: ValidationState) -> Dict[str, Any]:
        session = state["session"]
        attempt = state["attempt"]
        report = self.validator.validate(
            state["candidate"], session, state["intent"], state["request"], state["prior"]
        )

        if report.passed:
            accepted = replace(state["candidate"], version=session.next_version(), validated=True)
            self._notify(f"✅ [Validation] Candidate accepted as v{accepted.version} on attempt {attempt}")
            return {
                "candidate": accepted,
                "warnings": report.warnings,
                "loop_state": LoopState.ACCEPTED,
                "messages": [f"attempt {attempt}: accepted"],
            }

        for reason in report.reasons[:5]:
            self._notify(f"   ❌ {reason}")
        return {
            "failure_history": state["failure_history"] + [report.reasons],
            "warnings": report.warnings,
            "loop_state": self._failed_state(attempt, state["max_attempts"]),
            "messages": [f"attempt {attempt}: rejected ({len(report.errors)} error(s))"],
        }

    # ============ ROUTING ============

    def _should_continue(self, state: ValidationState) -> Literal["check", "accepted", "retry", "exhausted", "cancelled"]:
        loop_state = state["loop_state"]
        if loop_state == LoopState.CANCELLED:
            return "cancelled"
        if loop_state == LoopState.ACCEPTED:
            return "accepted"
        if loop_state == LoopState.PENDING:
            return "check"
        if loop_state == LoopState.EXHAUSTED:
            self._notify(f"🛑 [Validation] All {state['max_attempts']} attempts failed")
            return "exhausted"
        # REJECTED with budget left; cancellation is honoured before each retry
        if state["session"].cancelled:
            return "cancelled"
        return "retry"

    # ============ HELPERS ============

    def _failed_state(self, attempt: int, max_attempts: int) -> LoopState:
        return LoopState.EXHAUSTED if attempt >= max_attempts else LoopState.REJECTED

    def _corrective_context(self, state: ValidationState) -> List[str]:
        lines = list(state["base_corrections"])
        for number, reasons in enumerate(state["failure_history"], 1):
            lines.append(f"Attempt {number} was rejected:")
            lines.extend(f"- {reason}" for reason in reasons)
        return lines

    def _outcome(self, final_state: ValidationState) -> ValidationOutcome:
        loop_state = final_state["loop_state"]
        attempts = final_state["attempt"]
        if loop_state == LoopState.ACCEPTED:
            return Accepted(
                snapshot=final_state["candidate"],
                attempts=attempts,
                warnings=final_state["warnings"],
            )
        history = final_state["failure_history"]
        reasons = history[-1] if history else []
        # A retry skipped because of a cancel leaves the state at REJECTED
        if loop_state == LoopState.REJECTED and final_state["session"].cancelled:
            loop_state = LoopState.CANCELLED
        if loop_state == LoopState.CANCELLED:
            reasons = reasons + ["Turn was cancelled"]
        return Rejected(
            reasons=reasons,
            attempts=attempts,
            cancelled=loop_state == LoopState.CANCELLED,
            failure_history=history,
        )
