"""
Review Graph - LangGraph implementation of the bounded visual review loop.

After a validated candidate is applied, the reviewer compares before/after
screenshots. Unsafe suggestions are blocked by the safety rules; what is left
is fed back through the validation loop as corrective context, and the new
candidate is applied and reviewed again.

Flow:
    START → review → filter → decide → [status?]
                                          ├── PASS → END
                                          ├── guard tripped / budget spent → END
                                          └── defects → correct → review → ...

Guards:
- cycle cap (5 by default)
- repeated-issue guard: identical defect fingerprints in two consecutive cycles
- progress guard: defect count not strictly decreasing for 3 consecutive cycles
"""

from dataclasses import dataclass, field
from operator import add
from typing import Annotated, Any, Dict, List, Literal, Optional, Sequence, Tuple, TypedDict

from langgraph.graph import END, StateGraph

from ..agents.visual_reviewer import VisualReviewerAgent, build_feedback
from ..review.safety_rules import apply_filter
from ..session import CodeSnapshot, Defect, Intent, LoopState, ReviewStatus, Session, Verdict
from ..utils.progress import ProgressReporter
from ..utils.timeouts import call_with_timeout
from .validation_graph import Accepted, ValidationEngine


@dataclass
class ReviewOutcome:
    """How the review loop ended and what is on the page."""
    state: LoopState
    snapshot: CodeSnapshot
    verdict: Optional[Verdict]
    cycles: int
    validation_attempts: int = 0
    needs_manual_review: bool = False
    reason: str = ""
    blocked: List[Defect] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.state == LoopState.ACCEPTED

    @property
    def remaining(self) -> List[Defect]:
        return self.verdict.unblocked if self.verdict else []

    @property
    def should_roll_back(self) -> bool:
        """Critical leftovers, an unmet goal or a missing verdict mean the page cannot keep the change."""
        if self.passed:
            return False
        if self.state == LoopState.CANCELLED or self.verdict is None:
            return True
        if self.verdict.status == ReviewStatus.GOAL_NOT_MET:
            return True
        return any(d.severity == "critical" for d in self.remaining)


# ============ STATE DEFINITION ============

class ReviewState(TypedDict):
    """State that flows through the review graph."""
    # Input
    session: Session
    request: str
    history_summary: List[str]
    target_context: Optional[Dict[str, Any]]
    before: bytes

    # Current candidate (validated and applied)
    candidate: CodeSnapshot

    # Cycle tracking
    cycle: int
    max_cycles: int
    verdict: Optional[Verdict]
    previous_fingerprints: Optional[Tuple[str, ...]]
    previous_count: Optional[int]
    stall_count: int
    validation_attempts: int
    blocked: List[Defect]

    # Final status
    loop_state: LoopState
    needs_manual_review: bool
    stop_reason: str

    messages: Annotated[List[str], add]


class ReviewLoop(ProgressReporter):
    """
    LangGraph-based orchestration of the visual reviewer and corrective regeneration.

    Corrections never bypass validation: each one goes through the
    ValidationEngine before it is applied to the document.
    """

    MAX_CYCLES = 5
    MAX_STALLS = 3

    def __init__(
        self,
        reviewer: VisualReviewerAgent,
        validation_engine: ValidationEngine,
        max_cycles: int = MAX_CYCLES,
        stall_limit: int = MAX_STALLS,
        document_timeout: Optional[float] = 10.0,
        on_progress: Optional[callable] = None,
    ):
        self.reviewer = reviewer
        self.validation_engine = validation_engine
        self.max_cycles = max(1, min(max_cycles, self.MAX_CYCLES))
        self.stall_limit = max(1, stall_limit)
        self.document_timeout = document_timeout
        self.on_progress = on_progress

        self.graph = self._build_graph()
        self.compiled_graph = self.graph.compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(ReviewState)

        graph.add_node("review", self._review_node)
        graph.add_node("filter", self._filter_node)
        graph.add_node("decide", self._decide_node)
        graph.add_node("correct", self._correct_node)

        graph.set_entry_point("review")

        graph.add_conditional_edges(
            "review",
            self._after_review,
            {
                "filter": "filter",
                "stop": END,
            }
        )
        graph.add_edge("filter", "decide")
        graph.add_conditional_edges(
            "decide",
            self._should_continue,
            {
                "pass": END,
                "stop": END,
                "correct": "correct",
            }
        )
        graph.add_conditional_edges(
            "correct",
            self._after_correction,
            {
                "review": "review",
                "stop": END,
            }
        )
        return graph

    # ============ PUBLIC API ============

    def run(
        self,
        session: Session,
        request: str,
        candidate: CodeSnapshot,
        before: bytes,
        history_summary: Sequence[str] = (),
        target_context: Optional[Dict[str, Any]] = None,
    ) -> ReviewOutcome:
        """Review the applied candidate until it passes or a guard stops the loop."""
        initial_state: ReviewState = {
            "session": session,
            "request": request,
            "history_summary": list(history_summary),
            "target_context": target_context,
            "before": before,
            "candidate": candidate,
            "cycle": 0,
            "max_cycles": self.max_cycles,
            "verdict": None,
            "previous_fingerprints": None,
            "previous_count": None,
            "stall_count": 0,
            "validation_attempts": 0,
            "blocked": [],
            "loop_state": LoopState.PENDING,
            "needs_manual_review": False,
            "stop_reason": "",
            "messages": [],
        }

        # Four graph steps per cycle plus slack
        config = {"recursion_limit": self.max_cycles * 4 + 5}
        final_state = self.compiled_graph.invoke(initial_state, config)

        for line in final_state["messages"]:
            self._debug(line)

        return ReviewOutcome(
            state=final_state["loop_state"],
            snapshot=final_state["candidate"],
            verdict=final_state["verdict"],
            cycles=final_state["cycle"],
            validation_attempts=final_state["validation_attempts"],
            needs_manual_review=final_state["needs_manual_review"],
            reason=final_state["stop_reason"],
            blocked=final_state["blocked"],
        )

    # ============ NODE IMPLEMENTATIONS ============

    def _review_node(self, state: ReviewState) -> Dict[str, Any]:
        session = state["session"]
        if session.cancelled:
            return {"loop_state": LoopState.CANCELLED, "stop_reason": "Turn was cancelled"}

        cycle = state["cycle"] + 1
        self._notify(f"👁️ [Review] Cycle {cycle}/{state['max_cycles']}")
        try:
            after = call_with_timeout(session.document.capture, self.document_timeout, "Screenshot capture")
            verdict = self.reviewer.review(state["before"], after, state["request"], state["candidate"].content)
        except Exception as e:
            # Reviewer errors, timeouts and capture failures all leave the change unverified
            self._notify(f"⚠️ [Review] Visual review unavailable: {e}")
            return {
                "cycle": cycle,
                "verdict": None,
                "loop_state": LoopState.REJECTED,
                "stop_reason": f"Visual review unavailable: {e}",
                "messages": [f"cycle {cycle}: reviewer failed ({e})"],
            }

        if session.cancelled:
            return {"cycle": cycle, "loop_state": LoopState.CANCELLED, "stop_reason": "Turn was cancelled"}

        return {
            "cycle": cycle,
            "verdict": verdict,
            "messages": [f"cycle {cycle}: {verdict.status.value}, {len(verdict.defects)} defect(s)"],
        }

    def _filter_node(self, state: ReviewState) -> Dict[str, Any]:
        verdict = apply_filter(state["verdict"])
        blocked = [d for d in verdict.defects if d.blocked]
        for defect in blocked:
            self._notify(f"🛡️ [Review] Blocked unsafe fix ({defect.blocked_by}): {defect.suggested_fix[:80]}")
        if blocked and verdict.status == ReviewStatus.PASS and state["verdict"].status != ReviewStatus.PASS:
            self._notify("🛡️ [Review] Only unsafe suggestions were left; treating as PASS")
        return {"verdict": verdict, "blocked": state["blocked"] + blocked}

    def _decide_node(self, state: ReviewState) -> Dict[str, Any]:
        verdict = state["verdict"]
        cycle = state["cycle"]

        if verdict.status == ReviewStatus.PASS:
            self._notify(f"✅ [Review] PASS on cycle {cycle}")
            return {"loop_state": LoopState.ACCEPTED, "messages": [f"cycle {cycle}: accepted"]}

        fingerprints = verdict.fingerprints
        count = len(verdict.unblocked)
        previous_count = state["previous_count"]
        stall_count = state["stall_count"] + 1 if previous_count is None or count >= previous_count else 0
        update = {
            "previous_fingerprints": fingerprints,
            "previous_count": count,
            "stall_count": stall_count,
        }

        if fingerprints and fingerprints == state["previous_fingerprints"]:
            self._notify("⚠️ [Review] Same defects reported twice in a row, stopping")
            update.update(
                loop_state=LoopState.EXHAUSTED,
                needs_manual_review=True,
                stop_reason="The reviewer reported the same defects in two consecutive cycles",
            )
            return update

        if stall_count >= self.stall_limit:
            self._notify(f"⚠️ [Review] No progress for {stall_count} cycles, stopping")
            update.update(
                loop_state=LoopState.EXHAUSTED,
                needs_manual_review=True,
                stop_reason=f"Defect count did not decrease for {stall_count} consecutive cycles",
            )
            return update

        if cycle >= state["max_cycles"]:
            self._notify(f"⚠️ [Review] Review budget of {state['max_cycles']} cycles spent")
            update.update(
                loop_state=LoopState.EXHAUSTED,
                needs_manual_review=True,
                stop_reason=f"Defects remained after {cycle} review cycles",
            )
            return update

        if state["session"].cancelled:
            update.update(loop_state=LoopState.CANCELLED, stop_reason="Turn was cancelled")
            return update

        update["loop_state"] = LoopState.REJECTED
        return update

    def _correct_node(self, state: ReviewState) -> Dict[str, Any]:
        session = state["session"]
        cycle = state["cycle"]
        feedback = build_feedback(state["verdict"], cycle)
        self._notify(f"🔧 [Review] Requesting correction for {len(state['verdict'].unblocked)} defect(s)")

        outcome = self.validation_engine.run(
            session,
            state["request"],
            Intent.REFINEMENT,
            prior=state["candidate"],
            history_summary=state["history_summary"],
            target_context=state["target_context"],
            corrective_context=feedback,
        )
        attempts = state["validation_attempts"] + outcome.attempts

        if not isinstance(outcome, Accepted):
            if outcome.cancelled:
                return {
                    "validation_attempts": attempts,
                    "loop_state": LoopState.CANCELLED,
                    "stop_reason": "Turn was cancelled",
                }
            return {
                "validation_attempts": attempts,
                "loop_state": LoopState.EXHAUSTED,
                "needs_manual_review": True,
                "stop_reason": "Corrected code failed validation: " + "; ".join(outcome.reasons[:3]),
                "messages": [f"cycle {cycle}: correction rejected"],
            }

        try:
            call_with_timeout(lambda: session.document.apply(outcome.snapshot), self.document_timeout, "Apply")
        except Exception as e:
            session.document_dirty = True
            return {
                "validation_attempts": attempts,
                "loop_state": LoopState.REJECTED,
                "verdict": None,
                "stop_reason": f"Could not apply corrected code: {e}",
            }
        session.document_dirty = True

        return {
            "candidate": outcome.snapshot,
            "validation_attempts": attempts,
            "loop_state": LoopState.PENDING,
            "messages": [f"cycle {cycle}: applied correction v{outcome.snapshot.version}"],
        }

    # ============ ROUTING ============

    def _after_review(self, state: ReviewState) -> Literal["filter", "stop"]:
        if state["loop_state"] in (LoopState.CANCELLED, LoopState.REJECTED):
            return "stop"
        return "filter"

    def _should_continue(self, state: ReviewState) -> Literal["pass", "stop", "correct"]:
        if state["loop_state"] == LoopState.ACCEPTED:
            return "pass"
        if state["loop_state"] == LoopState.REJECTED:
            return "correct"
        return "stop"

    def _after_correction(self, state: ReviewState) -> Literal["review", "stop"]:
        if state["loop_state"] == LoopState.PENDING:
            return "review"
        return "stop"
