"""
End-to-end turns through the RefinementChain with fake collaborators.
"""

import threading
import time

from langchain_core.language_models.fake_chat_models import FakeListChatModel

from pagecraft.agents.generator import GenerationGateway
from pagecraft.agents.intent_classifier import IntentClassifierAgent
from pagecraft.agents.validator import SnapshotValidator
from pagecraft.chains.refinement_chain import PipelineStep, RefinementChain
from pagecraft.config import RefinementConfig
from pagecraft.errors import ReviewBlocked
from pagecraft.session import Intent, ReviewStatus, TurnStatus
from pagecraft.utils.history_store import SessionHistoryStore

from conftest import CrashedDocument, FakeDocument, ScriptedReviewer, defect, judgement, reply, verdict

GREEN = "#cta { background-color: green !important; }"
DARK_GREEN = "#cta { background-color: darkgreen !important; }"
HEADLINE = ".hero-title { font-size: 3rem; }"


class FailingReviewer:
    calls = 0

    def review(self, before, after, request, code=""):
        self.calls += 1
        raise ReviewBlocked("vision model unreachable")


class CancellingDocument(FakeDocument):
    """Signals cancellation the first time code is applied, like a user hitting stop mid-turn."""

    def __init__(self):
        super().__init__()
        self.session = None

    def apply(self, snapshot):
        super().apply(snapshot)
        if self.session is not None and not snapshot.is_empty:
            self.session.cancel_event.set()
            self.session = None


class GatedDocument(FakeDocument):
    """Holds the first apply until the test opens the gate."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.gate = threading.Event()
        self.apply_calls = 0

    def apply(self, snapshot):
        self.apply_calls += 1
        if self.apply_calls == 1:
            self.entered.set()
            self.gate.wait(5)
        super().apply(snapshot)


def wait_for(condition, timeout=5.0):
    deadline = time.time() + timeout
    while not condition():
        if time.time() > deadline:
            return False
        time.sleep(0.01)
    return True


class TestFirstTurns:

    def test_first_request_is_a_new_feature_and_applied(self, make_chain, document):
        chain = make_chain([reply(css=GREEN)])
        session = chain.create_session(document)

        result = chain.run_turn(session, "make the button green")

        assert result.status == TurnStatus.APPLIED
        assert result.intent == Intent.NEW_FEATURE
        assert result.snapshot.targets == frozenset({"#cta"})
        assert result.snapshot.validated
        assert result.snapshot.version == 1
        assert session.current is result.snapshot
        assert document.shown.content == result.snapshot.content
        assert result.validation_attempts == 1

    def test_follow_up_with_pronoun_refines_same_target(self, make_chain, document):
        chain = make_chain([reply(css=GREEN), reply(css=DARK_GREEN)])
        session = chain.create_session(document)
        first = chain.run_turn(session, "make the button green")

        second = chain.run_turn(session, "make it darker")

        assert second.status == TurnStatus.APPLIED
        assert second.intent == Intent.REFINEMENT
        assert second.confidence >= 0.6
        assert second.snapshot.targets == first.snapshot.targets
        assert second.snapshot.version > first.snapshot.version
        assert "darkgreen" in session.current.css

    def test_low_confidence_new_feature_with_pronoun_is_biased_to_refinement(self, make_chain, document):
        chain = make_chain(
            [reply(css=GREEN), reply(css=DARK_GREEN)],
            classifier_replies=[judgement("NEW_FEATURE", 0.55)],
        )
        session = chain.create_session(document)
        chain.run_turn(session, "make the button green")

        result = chain.run_turn(session, "make it darker")

        assert result.intent == Intent.REFINEMENT
        assert result.confidence >= 0.6

    def test_classifier_model_failure_falls_back_to_lexical_rules(self, make_chain, document):
        chain = make_chain([reply(css=GREEN), reply(css=DARK_GREEN)], classifier_replies=["I am not sure"])
        session = chain.create_session(document)
        chain.run_turn(session, "make the button green")

        result = chain.run_turn(session, "make it darker")

        assert result.status == TurnStatus.APPLIED
        assert result.intent == Intent.REFINEMENT

    def test_unclassifiable_request_is_a_failed_turn_not_an_exception(self, make_chain, document):
        chain = make_chain([reply(css=GREEN)], classifier_replies=["no idea"])
        session = chain.create_session(document)
        first = chain.run_turn(session, "make the button green")

        result = chain.run_turn(session, "purple")

        assert result.status == TurnStatus.ROLLED_BACK
        assert "understand" in result.reason
        assert session.current is first.snapshot
        assert chain.generator.calls == 1


class TestClarification:

    def _two_targets(self, make_chain, document, generator_replies):
        chain = make_chain(
            generator_replies,
            classifier_replies=[judgement("NEW_FEATURE", 0.9), judgement("REFINEMENT", 0.7)],
        )
        session = chain.create_session(document)
        chain.run_turn(session, "make the button green")
        chain.run_turn(session, "make the headline bigger")
        return chain, session

    def test_pronoun_with_two_unrelated_targets_asks_for_clarification(self, make_chain, document):
        chain, session = self._two_targets(
            make_chain, document, [reply(css=GREEN), reply(css=GREEN + "\n" + HEADLINE)]
        )
        before = session.current

        result = chain.run_turn(session, "change it")

        assert result.intent == Intent.AMBIGUOUS
        assert result.status == TurnStatus.NEEDS_CLARIFICATION
        assert len(result.clarification_options) >= 2
        assert chain.generator.calls == 2
        assert session.current is before
        assert session.pending_clarification is not None
        assert "clarificationOptions" in result.to_dict()

    def test_choice_resolves_the_outstanding_clarification(self, make_chain, document):
        chain, session = self._two_targets(
            make_chain,
            document,
            [
                reply(css=GREEN),
                reply(css=GREEN + "\n" + HEADLINE),
                reply(css=DARK_GREEN + "\n" + HEADLINE),
            ],
        )
        chain.run_turn(session, "change it")

        result = chain.run_turn(session, "", choice=0)

        assert result.status == TurnStatus.APPLIED
        assert result.intent == Intent.REFINEMENT
        assert session.pending_clarification is None
        assert session.turns[-1].request == "change it"
        assert {"#cta", ".hero-title"} <= result.snapshot.targets

    def test_choice_out_of_range_keeps_the_question_open(self, make_chain, document):
        chain, session = self._two_targets(
            make_chain, document, [reply(css=GREEN), reply(css=GREEN + "\n" + HEADLINE)]
        )
        chain.run_turn(session, "change it")

        result = chain.run_turn(session, "", choice=42)

        assert result.status == TurnStatus.NEEDS_CLARIFICATION
        assert session.pending_clarification is not None

    def test_new_request_supersedes_the_clarification(self, make_chain, document):
        chain, session = self._two_targets(
            make_chain,
            document,
            [
                reply(css=GREEN),
                reply(css=GREEN + "\n" + HEADLINE),
                reply(css=GREEN + "\n" + HEADLINE + "\n.pricing-card { border: 1px solid #ddd; }"),
            ],
        )
        chain.run_turn(session, "change it")
        chain.classifier.llm = FakeListChatModel(responses=[judgement("NEW_FEATURE", 0.9)])

        result = chain.run_turn(session, "add a border to the pricing card")

        assert result.status == TurnStatus.APPLIED
        assert session.pending_clarification is None


class TestValidationFailures:

    def test_missing_target_on_every_attempt_rolls_back(self, make_chain, document):
        chain = make_chain([reply(css="#missing-banner { color: red; }")])
        session = chain.create_session(document)

        result = chain.run_turn(session, "make the banner red")

        assert result.status == TurnStatus.ROLLED_BACK
        assert result.validation_attempts == 3
        assert chain.generator.calls == 3
        assert session.current.is_empty
        assert document.applied == []
        assert "#missing-banner" in result.reason

    def test_rollback_keeps_previous_snapshot(self, make_chain, document):
        chain = make_chain(
            [reply(css=GREEN)] + [reply(css=GREEN + "\n#missing-banner { color: red; }")] * 3,
            classifier_replies=[judgement("NEW_FEATURE", 0.9)],
        )
        session = chain.create_session(document)
        first = chain.run_turn(session, "make the button green")

        result = chain.run_turn(session, "add a red banner")

        assert result.status == TurnStatus.ROLLED_BACK
        assert session.current is first.snapshot
        assert result.snapshot is first.snapshot
        assert session.turns[-1].snapshot is None
        # Later attempts see the failures of every earlier attempt
        last_context = "\n".join(chain.generator.corrections[-1])
        assert "Attempt 1 was rejected" in last_context
        assert "Attempt 2 was rejected" in last_context

    def test_second_attempt_can_recover(self, make_chain, document):
        chain = make_chain([reply(css="#missing { color: red; }"), reply(css=GREEN)])
        session = chain.create_session(document)

        result = chain.run_turn(session, "make the button green")

        assert result.status == TurnStatus.APPLIED
        assert result.validation_attempts == 2

    def test_refinement_that_drops_a_target_is_rejected(self, make_chain, document):
        chain = make_chain(
            [reply(css=GREEN + "\n" + HEADLINE)] + [reply(css=DARK_GREEN)] * 3,
        )
        session = chain.create_session(document)
        first = chain.run_turn(session, "make the button green and the headline bigger")

        result = chain.run_turn(session, "make it darker")

        assert result.intent == Intent.REFINEMENT
        assert result.status == TurnStatus.ROLLED_BACK
        assert session.current is first.snapshot


class TestVisualReview:

    def test_unsafe_fix_is_filtered_and_turn_passes(self, make_chain, document):
        reviewer = ScriptedReviewer([verdict(
            ReviewStatus.MAJOR_DEFECT,
            defect("Button overlaps the navigation bar", fix="nav.primary { margin-top: 70px }"),
        )])
        chain = make_chain([reply(css=GREEN)], reviewer=reviewer)
        session = chain.create_session(document)

        result = chain.run_turn(session, "make the button green")

        assert result.status == TurnStatus.APPLIED
        assert chain.generator.calls == 1
        assert reviewer.calls == 1
        assert result.review_cycles == 1
        assert not result.needs_manual_review
        assert all(d.blocked for d in result.defects)

    def test_non_decreasing_defects_stop_after_three_cycles(self, make_chain, document):
        reviewer = ScriptedReviewer([
            verdict(ReviewStatus.MAJOR_DEFECT, defect("Spacing above button too tight")),
            verdict(ReviewStatus.MAJOR_DEFECT, defect("Button text misaligned"), defect("Gap under hero too large")),
            verdict(ReviewStatus.MAJOR_DEFECT, defect("Button padding uneven"), defect("Card margin inconsistent")),
            verdict(ReviewStatus.MAJOR_DEFECT, defect("Another issue"), defect("Yet another issue")),
            verdict(ReviewStatus.MAJOR_DEFECT, defect("More"), defect("Still more")),
        ])
        chain = make_chain([reply(css=GREEN)], reviewer=reviewer)
        session = chain.create_session(document)

        result = chain.run_turn(session, "make the button green")

        assert reviewer.calls == 3
        assert result.review_cycles == 3
        assert chain.generator.calls == 3
        assert result.needs_manual_review
        assert result.status == TurnStatus.APPLIED

    def test_unresolved_critical_defects_roll_back(self, make_chain, document):
        reviewer = ScriptedReviewer([
            verdict(ReviewStatus.CRITICAL_DEFECT, defect("Button text unreadable", "critical", "text-unreadable")),
            verdict(ReviewStatus.CRITICAL_DEFECT, defect("Button covers headline", "critical", "element-overlapping")),
            verdict(ReviewStatus.CRITICAL_DEFECT, defect("Headline hidden", "critical", "element-missing")),
        ])
        chain = make_chain([reply(css=GREEN)], reviewer=reviewer)
        session = chain.create_session(document)

        result = chain.run_turn(session, "make the button green")

        assert result.status == TurnStatus.ROLLED_BACK
        assert result.review_cycles == 3
        assert session.current.is_empty
        assert document.shown.is_empty
        assert not session.document_dirty

    def test_repeated_identical_defects_stop_early(self, make_chain, document):
        same = defect("Button overlaps footer", "critical", "element-overlapping")
        reviewer = ScriptedReviewer([verdict(ReviewStatus.CRITICAL_DEFECT, same)])
        chain = make_chain([reply(css=GREEN)], reviewer=reviewer)
        session = chain.create_session(document)

        result = chain.run_turn(session, "make the button green")

        assert reviewer.calls == 2
        assert result.needs_manual_review
        assert result.status == TurnStatus.ROLLED_BACK

    def test_review_never_exceeds_five_cycles(self, make_chain, document):
        reviewer = ScriptedReviewer([
            verdict(ReviewStatus.MAJOR_DEFECT, *[defect(f"Issue {n} of cycle {c}") for n in range(6 - c)])
            for c in range(1, 8)
        ])
        chain = make_chain([reply(css=GREEN)], reviewer=reviewer)
        session = chain.create_session(document)

        result = chain.run_turn(session, "make the button green")

        assert reviewer.calls == 5
        assert result.review_cycles == 5
        assert chain.generator.calls == 5

    def test_correction_that_passes_is_committed(self, make_chain, document):
        reviewer = ScriptedReviewer([
            verdict(ReviewStatus.MAJOR_DEFECT, defect("Green clashes with the palette", category="color-disharmony")),
            verdict(ReviewStatus.PASS),
        ])
        chain = make_chain([reply(css=GREEN), reply(css=DARK_GREEN)], reviewer=reviewer)
        session = chain.create_session(document)

        result = chain.run_turn(session, "make the button green")

        assert result.status == TurnStatus.APPLIED
        assert result.review_cycles == 2
        assert "darkgreen" in session.current.css
        assert "color-disharmony" in "\n".join(chain.generator.corrections[-1])

    def test_reviewer_failure_rolls_back(self, make_chain, document):
        chain = make_chain([reply(css=GREEN)], reviewer=FailingReviewer())
        session = chain.create_session(document)

        result = chain.run_turn(session, "make the button green")

        assert result.status == TurnStatus.ROLLED_BACK
        assert "unavailable" in result.reason
        assert session.current.is_empty
        assert document.shown.is_empty


class TestQualityAndHistory:

    def test_large_growth_raises_quality_warning(self, make_chain, document):
        bigger = (
            "#cta { background-color: darkgreen !important; color: #fff; border-radius: 8px; "
            "padding: 12px 24px; box-shadow: 0 2px 6px rgba(0,0,0,.2); }"
        )
        chain = make_chain([reply(css=GREEN), reply(css=bigger)])
        session = chain.create_session(document)
        chain.run_turn(session, "make the button green")

        result = chain.run_turn(session, "make it darker and rounder")

        assert result.status == TurnStatus.APPLIED
        assert result.quality_warning is not None
        assert "total_length" in result.quality_warning
        assert result.quality_summary["status"] in ("Excellent", "Good", "Fair", "Poor")
        assert len(session.quality_window) == 2

    def test_turns_are_persisted_per_session(self, make_chain, document, tmp_path):
        chain = make_chain([reply(css=GREEN), reply(css=DARK_GREEN)], history_dir=str(tmp_path))
        session = chain.create_session(document)
        chain.run_turn(session, "make the button green")
        chain.run_turn(session, "make it darker")

        restored = SessionHistoryStore(str(tmp_path)).load(session.session_id)

        assert [t.request for t in restored] == ["make the button green", "make it darker"]
        assert [t.status for t in restored] == [TurnStatus.APPLIED, TurnStatus.APPLIED]
        assert restored[-1].snapshot.targets == frozenset({"#cta"})


class TestCancellation:

    def test_cancel_after_apply_restores_the_page(self, make_chain):
        document = CancellingDocument()
        chain = make_chain([reply(css=GREEN)])
        session = chain.create_session(document)
        document.session = session

        result = chain.run_turn(session, "make the button green")

        assert result.status == TurnStatus.ROLLED_BACK
        assert "cancelled" in result.reason
        assert session.current.is_empty
        assert document.shown.is_empty
        assert not session.cancelled

    def test_cancel_with_no_turn_in_flight_is_a_no_op(self, make_chain, document):
        chain = make_chain([reply(css=GREEN)])
        session = chain.create_session(document)

        assert chain.cancel(session) is False
        assert chain.run_turn(session, "make the button green").status == TurnStatus.APPLIED

    def test_cancelled_turn_keeps_its_intent_in_history(self, make_chain):
        document = CancellingDocument()
        chain = make_chain([reply(css=GREEN)])
        session = chain.create_session(document)
        document.session = session

        result = chain.run_turn(session, "make the button green")

        assert result.intent == Intent.NEW_FEATURE
        assert session.turns[-1].intent == Intent.NEW_FEATURE
        assert session.turns[-1].status == TurnStatus.ROLLED_BACK


class TestConcurrencyPolicy:

    def _start(self, chain, session, results, key, request):
        thread = threading.Thread(target=lambda: results.update({key: chain.run_turn(session, request)}))
        thread.start()
        return thread

    def test_queue_runs_turns_one_after_another(self, make_chain):
        document = GatedDocument()
        chain = make_chain([reply(css=GREEN), reply(css=DARK_GREEN)], concurrency_policy="queue")
        session = chain.create_session(document)
        results = {}

        first = self._start(chain, session, results, "first", "make the button green")
        assert document.entered.wait(5)
        second = self._start(chain, session, results, "second", "make it darker")
        time.sleep(0.2)
        assert chain.generator.calls == 1
        assert not session.cancelled
        document.gate.set()
        first.join(10)
        second.join(10)

        assert results["first"].status == TurnStatus.APPLIED
        assert results["second"].status == TurnStatus.APPLIED
        assert [t.request for t in session.turns] == ["make the button green", "make it darker"]
        assert "darkgreen" in session.current.css

    def test_cancel_stops_the_running_turn_and_rolls_it_back(self, make_chain):
        document = GatedDocument()
        chain = make_chain([reply(css=GREEN), reply(css=HEADLINE)], concurrency_policy="cancel")
        session = chain.create_session(document)
        results = {}

        first = self._start(chain, session, results, "first", "make the button green")
        assert document.entered.wait(5)
        second = self._start(chain, session, results, "second", "make the headline bigger")
        assert wait_for(session.cancel_event.is_set)
        document.gate.set()
        first.join(10)
        second.join(10)

        assert results["first"].status == TurnStatus.ROLLED_BACK
        assert "cancelled" in results["first"].reason
        assert results["first"].intent == Intent.NEW_FEATURE
        assert results["second"].status == TurnStatus.APPLIED
        assert session.current.targets == frozenset({".hero-title"})
        assert document.shown.content == session.current.content


class TestDocumentFailures:

    def test_crashed_page_on_apply_is_a_rolled_back_turn(self, make_chain):
        document = CrashedDocument()
        chain = make_chain([reply(css=GREEN)])
        session = chain.create_session(document)

        result = chain.run_turn(session, "make the button green")

        assert result.status == TurnStatus.ROLLED_BACK
        assert "could not be applied" in result.reason
        assert session.current.is_empty
        assert session.document_dirty
        assert document.apply_calls == 2
        assert session.turns[-1].status == TurnStatus.ROLLED_BACK

    def test_page_dying_after_a_good_turn_keeps_the_last_good_snapshot(self, make_chain):
        document = CrashedDocument(healthy_applies=1)
        chain = make_chain([reply(css=GREEN), reply(css=DARK_GREEN)])
        session = chain.create_session(document)
        first = chain.run_turn(session, "make the button green")

        second = chain.run_turn(session, "make it darker")

        assert first.status == TurnStatus.APPLIED
        assert second.status == TurnStatus.ROLLED_BACK
        assert second.intent == Intent.REFINEMENT
        assert session.current is first.snapshot
        assert second.snapshot is first.snapshot

    def test_page_dying_during_a_review_correction_rolls_back(self, make_chain):
        document = CrashedDocument(healthy_applies=1)
        reviewer = ScriptedReviewer([
            verdict(ReviewStatus.MAJOR_DEFECT, defect("Green is too bright", category="color-disharmony")),
            verdict(ReviewStatus.PASS),
        ])
        chain = make_chain([reply(css=GREEN), reply(css=DARK_GREEN)], reviewer=reviewer)
        session = chain.create_session(document)

        result = chain.run_turn(session, "make the button green")

        assert result.status == TurnStatus.ROLLED_BACK
        assert reviewer.calls == 1
        assert "corrected code" in result.reason
        assert session.current.is_empty
        assert document.apply_calls == 3

    def test_unwritable_history_never_fails_the_turn(self, make_chain, document, tmp_path):
        chain = make_chain([reply(css=GREEN)], history_dir=str(tmp_path))
        session = chain.create_session(document, session_id="../outside")

        result = chain.run_turn(session, "make the button green")

        assert result.status == TurnStatus.APPLIED
        assert len(session.turns) == 1
        assert list(tmp_path.iterdir()) == []


class TestCallbacks:

    def test_steps_and_messages_reach_their_own_callbacks(self, document):
        steps, messages = [], []
        chain = RefinementChain(
            config=RefinementConfig(enable_visual_review=False),
            classifier=IntentClassifierAgent(llm=FakeListChatModel(responses=["{}"]), on_progress=messages.append),
            generator=GenerationGateway(llm=FakeListChatModel(responses=[reply(css=GREEN)]), on_progress=messages.append),
            validator=SnapshotValidator(on_progress=messages.append),
            history_store=SessionHistoryStore(),
            on_step=steps.append,
            on_progress=messages.append,
        )
        session = chain.create_session(document)

        chain.run_turn(session, "make the button green")

        assert all(isinstance(step, PipelineStep) for step in steps)
        assert [s.name for s in steps if s.status == "completed"] == ["Classify", "Generate", "Apply"]
        assert all(isinstance(message, str) for message in messages)
        assert any("[Chain]" in message for message in messages)
