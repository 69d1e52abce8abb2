"""
Refinement Chain - turn-level orchestration of a page-editing conversation.

Every turn runs the same phases in the same order:
    Classify → Generate/Validate (bounded loop) → Apply → Review (bounded loop) → Quality → Record

A turn either commits a validated snapshot or leaves the page exactly as it
was before the turn started. Failures are reported as a TurnResult with a
plain-language reason; nothing raised by a collaborator reaches the caller.
"""

import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..agents.generator import GenerationGateway
from ..agents.intent_classifier import IntentClassifierAgent, IntentResult
from ..agents.validator import SnapshotValidator
from ..agents.visual_reviewer import VisualReviewerAgent
from ..config import RefinementConfig
from ..errors import ClassificationFailed, RefinementError, TurnCancelled, ValidationRejected
from ..graphs.review_graph import ReviewLoop, ReviewOutcome
from ..graphs.validation_graph import Accepted, ValidationEngine
from ..session import (
    ClarificationOption,
    CodeSnapshot,
    Defect,
    Intent,
    LoopState,
    PendingClarification,
    Session,
    Turn,
    TurnStatus,
)
from ..utils.history_store import SessionHistoryStore
from ..utils.progress import ProgressReporter
from ..utils.quality_monitor import QualityMonitor
from ..utils.rollback import RollbackManager
from ..utils.timeouts import call_with_timeout


@dataclass
class PipelineStep:
    """Represents a single phase of a turn."""
    name: str
    status: str  # 'running', 'completed', 'failed'
    message: str = ""
    duration: float = 0.0
    session_id: Optional[str] = None


@dataclass
class TurnResult:
    """Caller-facing outcome of one turn."""
    status: TurnStatus
    snapshot: Optional[CodeSnapshot] = None
    defects: List[Defect] = field(default_factory=list)
    quality_warning: Optional[str] = None
    clarification_options: List[ClarificationOption] = field(default_factory=list)
    reason: str = ""
    intent: Optional[Intent] = None
    confidence: float = 0.0
    validation_attempts: int = 0
    review_cycles: int = 0
    needs_manual_review: bool = False
    quality_summary: Optional[Dict[str, Any]] = None
    steps_completed: List[str] = field(default_factory=list)
    duration: float = 0.0

    @property
    def applied(self) -> bool:
        return self.status == TurnStatus.APPLIED

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "status": self.status.value,
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
            "defects": [d.to_dict() for d in self.defects],
            "reason": self.reason,
            "intent": self.intent.value if self.intent else None,
            "confidence": self.confidence,
            "validationAttempts": self.validation_attempts,
            "reviewCycles": self.review_cycles,
            "needsManualReview": self.needs_manual_review,
            "qualitySummary": self.quality_summary,
            "duration": round(self.duration, 2),
        }
        if self.quality_warning:
            data["qualityWarning"] = self.quality_warning
        if self.clarification_options:
            data["clarificationOptions"] = [o.to_dict() for o in self.clarification_options]
        return data


class RefinementChain(ProgressReporter):
    """
    Production orchestration of one editing conversation per Session.

    Features:
    - Intent classification with clarification instead of guessing
    - Bounded generate/validate loop (LangGraph) before anything touches the page
    - Optional bounded visual review loop with unsafe-fix filtering
    - Rollback to the last known-good snapshot on every failure path
    - Advisory quality tracking across turns
    - One turn in flight per session (queue or cancel policy)
    """

    def __init__(
        self,
        config: Optional[RefinementConfig] = None,
        classifier: Optional[IntentClassifierAgent] = None,
        generator: Optional[GenerationGateway] = None,
        validator: Optional[SnapshotValidator] = None,
        reviewer: Optional[VisualReviewerAgent] = None,
        quality_monitor: Optional[QualityMonitor] = None,
        history_store: Optional[SessionHistoryStore] = None,
        rollback: Optional[RollbackManager] = None,
        on_step: Optional[Callable[[PipelineStep], None]] = None,
        on_progress: Optional[Callable[[str], None]] = None,
    ):
        self.config = config or RefinementConfig.from_env()
        self.on_progress = on_progress
        self.on_step = on_step
        cfg = self.config

        self.classifier = classifier or IntentClassifierAgent(
            threshold=cfg.ambiguity_threshold, timeout=cfg.classifier_timeout, on_progress=on_progress
        )
        self.generator = generator or GenerationGateway(timeout=cfg.generation_timeout, on_progress=on_progress)
        self.validator = validator or SnapshotValidator(probe_timeout=cfg.probe_timeout, on_progress=on_progress)
        if reviewer is None and cfg.enable_visual_review:
            reviewer = VisualReviewerAgent(timeout=cfg.review_timeout, on_progress=on_progress)
        self.reviewer = reviewer
        self.quality_monitor = quality_monitor or QualityMonitor()
        self.history_store = history_store or SessionHistoryStore(cfg.history_dir)
        self.rollback = rollback or RollbackManager(on_progress=on_progress, document_timeout=cfg.probe_timeout)

        self.validation_engine = ValidationEngine(
            self.generator,
            self.validator,
            max_attempts=cfg.max_validation_attempts,
            on_progress=on_progress,
        )
        self.review_loop = None
        if self.reviewer is not None and cfg.enable_visual_review:
            self.review_loop = ReviewLoop(
                self.reviewer,
                self.validation_engine,
                max_cycles=cfg.max_review_cycles,
                stall_limit=cfg.review_stall_limit,
                document_timeout=cfg.probe_timeout,
                on_progress=on_progress,
            )

    # ============ SESSIONS ============

    def create_session(self, document, session_id: Optional[str] = None) -> Session:
        kwargs = {"document": document, "quality_window": deque(maxlen=self.config.quality_window)}
        if session_id:
            kwargs["session_id"] = session_id
        session = Session(**kwargs)
        self.rollback.snapshot(session)
        self._notify(f"🆕 [Chain] Session {session.session_id} created")
        return session

    def close_session(self, session: Session) -> None:
        self.cancel(session)
        self.rollback.forget(session)
        self.history_store.forget(session.session_id)

    def cancel(self, session: Session) -> bool:
        """Ask the in-flight turn to stop at its next phase boundary.

        Returns True when a turn was running.
        """
        running = session.lock.locked()
        if running:
            session.cancel_event.set()
            self._notify(f"🛑 [Chain] Cancellation requested for session {session.session_id}")
        return running

    def _notify_progress(self, steps: List[PipelineStep], step: PipelineStep, session: Session):
        """Notify progress if callback is set."""
        step.session_id = session.session_id
        steps.append(step)
        if self.on_step:
            try:
                self.on_step(step)
            except Exception as e:
                self._notify(f"⚠️ Progress callback failed: {e}")

    # ============ TURN ============

    def run_turn(self, session: Session, request: str, choice: Optional[int] = None) -> TurnResult:
        """
        Execute one turn against the session.

        `choice` answers an outstanding clarification by option index; the
        original request is reused and `request` is ignored.
        """
        if self.config.concurrency_policy == "cancel" and session.lock.locked():
            self.cancel(session)

        with session.lock:
            session.cancel_event.clear()
            start_time = time.time()
            steps: List[PipelineStep] = []
            try:
                result = self._run_phases(session, request, choice, steps)
            except TurnCancelled as e:
                self.rollback.rollback(session)
                result = TurnResult(
                    status=TurnStatus.ROLLED_BACK,
                    snapshot=session.current,
                    reason="The request was cancelled; the page is unchanged",
                    intent=e.intent,
                    confidence=e.confidence,
                )
                self._record(session, request, result)
            except Exception as e:
                # Last-resort boundary: the page goes back to the last good state
                self._notify(f"❌ [Chain] Unexpected error: {e}")
                self.rollback.rollback(session)
                result = TurnResult(
                    status=TurnStatus.ROLLED_BACK,
                    snapshot=session.current,
                    reason=f"The request could not be applied safely ({type(e).__name__}); previous behavior is unchanged",
                )
                self._record(session, request, result)
            finally:
                session.cancel_event.clear()
            result.duration = time.time() - start_time
            result.steps_completed = [s.name for s in steps if s.status == "completed"]
            return result

    def _run_phases(self, session: Session, request: str, choice: Optional[int], steps: List[PipelineStep]) -> TurnResult:
        # ============ STEP 1: CLASSIFY ============
        step_start = time.time()
        self._notify_progress(steps, PipelineStep("Classify", "running", "Working out what the request refers to..."), session)

        if choice is not None:
            resolved = self._resolve_choice(session, choice)
            if isinstance(resolved, TurnResult):
                self._notify_progress(steps, PipelineStep("Classify", "failed", resolved.reason), session)
                return resolved
            request, classification = resolved
        else:
            if session.pending_clarification is not None:
                self._notify("ℹ️ [Chain] New request supersedes the outstanding clarification")
                session.pending_clarification = None
            try:
                classification = self.classifier.classify(
                    request,
                    session.has_prior_code,
                    session.prior_requests(),
                    sorted(session.current.targets),
                )
            except ClassificationFailed as e:
                self._notify_progress(steps, PipelineStep("Classify", "failed", str(e)), session)
                result = TurnResult(
                    status=TurnStatus.ROLLED_BACK,
                    reason=f"Could not understand the request: {e}. Previous behavior is unchanged.",
                )
                self._record(session, request, result)
                return result

        if classification.intent == Intent.AMBIGUOUS:
            session.pending_clarification = PendingClarification(request, list(classification.candidates))
            self._notify_progress(steps, PipelineStep(
                "Classify", "completed", "Needs clarification", time.time() - step_start
            ), session)
            result = TurnResult(
                status=TurnStatus.NEEDS_CLARIFICATION,
                snapshot=session.current,
                clarification_options=list(classification.candidates),
                reason=classification.reasoning or "The request could refer to more than one thing",
                intent=Intent.AMBIGUOUS,
                confidence=classification.confidence,
            )
            self._record(session, request, result)
            return result

        intent = classification.intent
        self._notify_progress(steps, PipelineStep(
            "Classify", "completed", f"{intent.value} ({classification.confidence:.2f})", time.time() - step_start
        ), session)
        self._check_cancelled(session, classification)

        # ============ STEP 2: GENERATE + VALIDATE ============
        prior = self.rollback.snapshot(session)
        step_start = time.time()
        self._notify_progress(steps, PipelineStep("Generate", "running", "Generating and validating code..."), session)

        target_context = self._target_context(session, request, classification)
        history = session.history_summary()
        try:
            candidate, attempts = self._generate(session, request, classification, prior, history, target_context)
        except ValidationRejected as e:
            self._notify_progress(steps, PipelineStep(
                "Generate", "failed", f"Rejected after {e.attempts} attempt(s)", time.time() - step_start
            ), session)
            self.rollback.rollback(session)
            summary = "; ".join(e.reasons[:3]) or "no valid code was produced"
            return self._finish(session, request, TurnResult(
                status=TurnStatus.ROLLED_BACK,
                reason=f"The change could not be applied safely after {e.attempts} attempt(s) ({summary}). "
                       "Previous behavior is unchanged.",
                intent=intent,
                confidence=classification.confidence,
                validation_attempts=e.attempts,
            ))

        self._notify_progress(steps, PipelineStep(
            "Generate", "completed", f"Accepted v{candidate.version} after {attempts} attempt(s)", time.time() - step_start
        ), session)
        self._check_cancelled(session, classification)

        # ============ STEP 3: APPLY ============
        review_enabled = self.review_loop is not None and self.config.enable_visual_review
        step_start = time.time()
        self._notify_progress(steps, PipelineStep("Apply", "running", "Applying to the page..."), session)
        try:
            before = self._capture(session) if review_enabled else b""
            session.document_dirty = True
            call_with_timeout(lambda: session.document.apply(candidate), self.config.probe_timeout, "Apply")
        except RefinementError as e:
            return self._fail_after_apply(session, request, steps, "Apply", str(e), intent, classification, attempts)
        except Exception as e:
            return self._fail_after_apply(session, request, steps, "Apply", f"Document error: {e}", intent, classification, attempts)
        self._notify_progress(steps, PipelineStep("Apply", "completed", "", time.time() - step_start), session)
        self._check_cancelled(session, classification)

        # ============ STEP 4: VISUAL REVIEW ============
        defects: List[Defect] = []
        review_cycles = 0
        needs_manual_review = False
        if review_enabled:
            step_start = time.time()
            self._notify_progress(steps, PipelineStep("Review", "running", "Comparing before/after screenshots..."), session)
            review = self.review_loop.run(session, request, candidate, before, history, target_context)
            review_cycles = review.cycles
            attempts += review.validation_attempts
            defects = review.remaining + review.blocked
            needs_manual_review = review.needs_manual_review and not review.passed
            self._check_cancelled(session, classification, review.state == LoopState.CANCELLED)

            if review.should_roll_back:
                self._notify_progress(steps, PipelineStep("Review", "failed", review.reason, time.time() - step_start), session)
                self.rollback.rollback(session)
                return self._finish(session, request, TurnResult(
                    status=TurnStatus.ROLLED_BACK,
                    defects=defects,
                    reason=self._review_reason(review),
                    intent=intent,
                    confidence=classification.confidence,
                    validation_attempts=attempts,
                    review_cycles=review_cycles,
                    needs_manual_review=needs_manual_review,
                ))
            candidate = review.snapshot
            self._notify_progress(steps, PipelineStep(
                "Review", "completed", review.reason or "Looks right", time.time() - step_start
            ), session)

        # ============ STEP 5: QUALITY ============
        metrics = self.quality_monitor.analyze(candidate)
        candidate = replace(candidate, metrics=metrics)
        previous = session.quality_window[-1] if session.quality_window else None
        degradation = self.quality_monitor.compare(metrics, previous)
        session.quality_window.append(metrics)
        declining = self.quality_monitor.trend(session.quality_window)
        quality_warning = self.quality_monitor.warning(degradation, declining)
        if quality_warning:
            self._notify(f"📉 [Quality] {quality_warning}")

        # ============ STEP 6: RECORD ============
        self.rollback.commit(session, candidate)
        reason = "Applied"
        if needs_manual_review:
            reason = "Applied, but some visual issues remain and need a manual look"
        return self._finish(session, request, TurnResult(
            status=TurnStatus.APPLIED,
            snapshot=candidate,
            defects=defects,
            quality_warning=quality_warning,
            reason=reason,
            intent=intent,
            confidence=classification.confidence,
            validation_attempts=attempts,
            review_cycles=review_cycles,
            needs_manual_review=needs_manual_review,
            quality_summary=self.quality_monitor.summary(metrics),
        ))

    # ============ HELPERS ============

    def _resolve_choice(self, session: Session, choice: int):
        pending = session.pending_clarification
        if pending is None:
            return TurnResult(
                status=TurnStatus.ROLLED_BACK,
                snapshot=session.current,
                reason="There is no open question to answer; send the request again",
            )
        if not 0 <= choice < len(pending.options):
            return TurnResult(
                status=TurnStatus.NEEDS_CLARIFICATION,
                snapshot=session.current,
                clarification_options=list(pending.options),
                reason=f"Option {choice} does not exist; pick one of {len(pending.options)} options",
                intent=Intent.AMBIGUOUS,
            )
        option = pending.options[choice]
        session.pending_clarification = None
        intent = option.intent
        if intent == Intent.REFINEMENT and not session.has_prior_code:
            intent = Intent.NEW_FEATURE
        self._notify(f"🧭 [Chain] Clarified: {option.label} -> {intent.value}")
        return pending.request, IntentResult(
            intent=intent,
            confidence=1.0,
            reasoning=f"User chose: {option.label}",
            source="user",
            focus_targets=option.targets,
        )

    def _target_context(self, session: Session, request: str, classification: IntentResult) -> Optional[Dict[str, Any]]:
        try:
            context = call_with_timeout(
                lambda: session.document.target_context(request), self.config.probe_timeout, "Target context"
            )
        except Exception as e:
            self._notify(f"⚠️ [Chain] Page context unavailable: {e}")
            context = {}
        context = dict(context or {})
        if classification.focus_targets:
            context["focus_targets"] = list(classification.focus_targets)
        return context or None

    def _capture(self, session: Session) -> bytes:
        return call_with_timeout(session.document.capture, self.config.probe_timeout, "Screenshot capture")

    def _generate(
        self,
        session: Session,
        request: str,
        classification: IntentResult,
        prior: CodeSnapshot,
        history: List[str],
        target_context: Optional[Dict[str, Any]],
    ):
        """Run the bounded generate/validate loop. Raises ValidationRejected."""
        outcome = self.validation_engine.run(session, request, classification.intent, prior, history, target_context)
        if isinstance(outcome, Accepted):
            return outcome.snapshot, outcome.attempts
        self._check_cancelled(session, classification, outcome.cancelled)
        raise ValidationRejected(outcome.reasons, attempts=outcome.attempts)

    def _check_cancelled(
        self, session: Session, classification: Optional[IntentResult] = None, cancelled: bool = False
    ) -> None:
        if cancelled or session.cancelled:
            raise TurnCancelled(
                "Turn was cancelled",
                intent=classification.intent if classification else None,
                confidence=classification.confidence if classification else 0.0,
            )

    def _fail_after_apply(
        self,
        session: Session,
        request: str,
        steps: List[PipelineStep],
        phase: str,
        error: str,
        intent: Intent,
        classification: IntentResult,
        attempts: int,
    ) -> TurnResult:
        self._notify_progress(steps, PipelineStep(phase, "failed", error), session)
        self.rollback.rollback(session)
        return self._finish(session, request, TurnResult(
            status=TurnStatus.ROLLED_BACK,
            reason=f"The change could not be applied to the page ({error}). Previous behavior is unchanged.",
            intent=intent,
            confidence=classification.confidence,
            validation_attempts=attempts,
        ))

    def _review_reason(self, review: ReviewOutcome) -> str:
        if review.verdict is None:
            detail = review.reason or "visual review unavailable"
        else:
            detail = review.reason or f"visual review reported {review.verdict.status.value}"
            critical = [d for d in review.remaining if d.severity == "critical"]
            if critical:
                detail += f"; {len(critical)} critical issue(s) remain such as: {critical[0].description}"
        return f"The change was rolled back because {detail[0].lower() + detail[1:]}. Previous behavior is unchanged."

    def _finish(self, session: Session, request: str, result: TurnResult) -> TurnResult:
        if result.status == TurnStatus.ROLLED_BACK:
            result.snapshot = session.current
        self._record(session, request, result)
        return result

    def _record(self, session: Session, request: str, result: TurnResult) -> None:
        turn = Turn(
            request=request,
            intent=result.intent or Intent.AMBIGUOUS,
            status=result.status,
            snapshot=result.snapshot if result.status == TurnStatus.APPLIED else None,
            defects=tuple(result.defects),
            validation_attempts=result.validation_attempts,
            review_cycles=result.review_cycles,
            confidence=result.confidence,
            reason=result.reason,
            quality_warning=result.quality_warning,
            needs_manual_review=result.needs_manual_review,
            timestamp=datetime.now().isoformat(),
        )
        session.turns.append(turn)
        try:
            self.history_store.append(session.session_id, turn)
        except Exception as e:
            # The in-memory history is authoritative; a lost log line never fails the turn
            self._notify(f"⚠️ [History] Could not persist turn: {e}")
        status_icon = {"applied": "✅", "rolled_back": "↩️", "needs_clarification": "❓"}[result.status.value]
        self._notify(f"{status_icon} [Chain] Turn {len(session.turns)}: {result.status.value} - {result.reason}")

    def history(self, session_id: str) -> List[Turn]:
        return self.history_store.turns(session_id)

