"""
Shared fixtures: an in-memory live document, a scripted visual reviewer and
LangChain fake chat models standing in for the classifier and generator.
"""

import json
from typing import Dict, List, Optional, Sequence

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from pagecraft.agents.generator import GenerationGateway
from pagecraft.agents.intent_classifier import IntentClassifierAgent
from pagecraft.agents.validator import SnapshotValidator
from pagecraft.chains.refinement_chain import RefinementChain
from pagecraft.config import RefinementConfig
from pagecraft.document.base import SyntaxReport
from pagecraft.session import CodeSnapshot, Defect, ReviewStatus, Verdict
from pagecraft.utils.history_store import SessionHistoryStore

PAGE_SELECTORS = {
    "#cta",
    ".hero-title",
    ".hero",
    "nav.primary",
    ".pricing-card",
    "footer",
}


class FakeDocument:
    """Live document double: a fixed set of matching selectors and a record of applies."""

    def __init__(self, selectors=PAGE_SELECTORS):
        self.selectors = set(selectors)
        self.applied: List[CodeSnapshot] = []
        self.shown: Optional[CodeSnapshot] = None
        self.probed: List[List[str]] = []
        self.closed = False

    def probe_selectors(self, selectors: Sequence[str]) -> Dict[str, bool]:
        self.probed.append(list(selectors))
        return {s: s in self.selectors for s in selectors}

    def check_syntax(self, code: str) -> SyntaxReport:
        if "@@" in code:
            return SyntaxReport(valid=False, errors=["Invalid or unexpected token '@'"])
        return SyntaxReport(valid=True)

    def apply(self, snapshot: CodeSnapshot) -> None:
        self.applied.append(snapshot)
        self.shown = snapshot

    def capture(self) -> bytes:
        content = self.shown.content if self.shown is not None else ""
        return f"render:{content}".encode("utf-8")

    def target_context(self, request: str):
        return {"title": "Test page", "elements": sorted(self.selectors), "request": request}

    def close(self) -> None:
        self.closed = True


class CrashedDocument(FakeDocument):
    """A page that dies after `healthy_applies` successful applies, like a closed browser tab."""

    def __init__(self, healthy_applies: int = 0):
        super().__init__()
        self.healthy_applies = healthy_applies
        self.apply_calls = 0

    def apply(self, snapshot: CodeSnapshot) -> None:
        self.apply_calls += 1
        if self.apply_calls > self.healthy_applies:
            raise RuntimeError("Target page, context or browser has been closed")
        super().apply(snapshot)


class ScriptedReviewer:
    """Returns the scripted verdicts in order, repeating the last one."""

    def __init__(self, verdicts: Sequence[Verdict]):
        self.verdicts = list(verdicts)
        self.calls = 0

    def review(self, before: bytes, after: bytes, request: str, code: str = "") -> Verdict:
        self.calls += 1
        return self.verdicts[min(self.calls, len(self.verdicts)) - 1]


class CountingGateway(GenerationGateway):
    """GenerationGateway that counts how often it is asked for code."""

    def __init__(self, llm, **kwargs):
        super().__init__(llm=llm, **kwargs)
        self.calls = 0
        self.corrections: List[List[str]] = []

    def generate(self, request, intent, prior, history_summary=(), target_context=None, corrective_context=()):
        self.calls += 1
        self.corrections.append(list(corrective_context))
        return super().generate(request, intent, prior, history_summary, target_context, corrective_context)


def reply(css: str = "", js: str = "", global_css: str = "", global_js: str = "") -> str:
    """A well-formed generation reply with one variation."""
    return json.dumps({
        "variations": [{"number": 1, "name": "Variation 1", "css": css, "js": js}],
        "globalCSS": global_css,
        "globalJS": global_js,
    })


def judgement(intent: str, confidence: float, reasoning: str = "") -> str:
    return json.dumps({"type": intent, "confidence": confidence, "reasoning": reasoning})


def verdict(status: ReviewStatus, *defects: Defect) -> Verdict:
    return Verdict(status=status, defects=list(defects), reasoning="scripted",
                   goal_accomplished=status != ReviewStatus.GOAL_NOT_MET)


def defect(description: str, severity: str = "major", category: str = "bad-spacing", fix: str = "") -> Defect:
    return Defect(severity=severity, category=category, description=description, suggested_fix=fix)


@pytest.fixture
def document():
    return FakeDocument()


@pytest.fixture
def make_chain():
    """Build a RefinementChain wired to fakes.

    `generator_replies` and `classifier_replies` are the raw texts the fake
    models answer with, in order.
    """
    def _make(
        generator_replies: Sequence[str],
        classifier_replies: Sequence[str] = (judgement("REFINEMENT", 0.8),),
        reviewer=None,
        history_dir: Optional[str] = None,
        **config_overrides,
    ) -> RefinementChain:
        config_values = {"enable_visual_review": reviewer is not None, "history_dir": history_dir}
        config_values.update(config_overrides)
        config = RefinementConfig(**config_values)
        messages: List[str] = []
        return RefinementChain(
            config=config,
            classifier=IntentClassifierAgent(
                llm=FakeListChatModel(responses=list(classifier_replies)),
                threshold=config.ambiguity_threshold,
                on_progress=messages.append,
            ),
            generator=CountingGateway(FakeListChatModel(responses=list(generator_replies)), on_progress=messages.append),
            validator=SnapshotValidator(on_progress=messages.append),
            reviewer=reviewer,
            history_store=SessionHistoryStore(history_dir),
            on_progress=messages.append,
        )
    return _make
