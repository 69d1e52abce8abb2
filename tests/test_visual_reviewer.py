import json

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from pagecraft.agents.visual_reviewer import VisualReviewerAgent, build_feedback
from pagecraft.errors import ReviewBlocked
from pagecraft.session import Defect, ReviewStatus, Verdict


class BrokenModel:
    model_name = "broken-vision"

    def invoke(self, messages):
        raise RuntimeError("503 Service Unavailable")


class RecordingModel:
    model_name = "recording-vision"

    def __init__(self, reply):
        self.reply = reply
        self.messages = []

    def invoke(self, messages):
        self.messages.extend(messages)
        return FakeListChatModel(responses=[self.reply]).invoke("review")


def verdict_json(status, defects=(), **extra):
    return json.dumps(dict(status=status, defects=list(defects), reasoning="checked", **extra))


@pytest.fixture
def reviewer():
    return VisualReviewerAgent(llm=FakeListChatModel(responses=[verdict_json("PASS")]), on_progress=lambda m: None)


class TestReview:

    def test_identical_images_are_goal_not_met_without_a_model_call(self):
        model = RecordingModel(verdict_json("PASS"))
        agent = VisualReviewerAgent(llm=model, on_progress=lambda m: None)

        verdict = agent.review(b"same", b"same", "make the button green")

        assert verdict.status == ReviewStatus.GOAL_NOT_MET
        assert not verdict.goal_accomplished
        assert verdict.defects[0].category == "element-missing"
        assert model.messages == []

    def test_both_images_are_sent_to_the_model(self):
        model = RecordingModel(verdict_json("PASS"))
        agent = VisualReviewerAgent(llm=model, on_progress=lambda m: None)

        verdict = agent.review(b"before", b"after", "make the button green", "#cta { color: green; }")

        assert verdict.status == ReviewStatus.PASS
        parts = model.messages[0].content
        assert [p["type"] for p in parts] == ["text", "image_url", "image_url"]
        assert parts[1]["image_url"]["url"].startswith("data:image/png;base64,")
        assert "make the button green" in parts[0]["text"]

    def test_model_errors_block_the_review(self):
        agent = VisualReviewerAgent(llm=BrokenModel(), on_progress=lambda m: None)

        with pytest.raises(ReviewBlocked):
            agent.review(b"before", b"after", "make the button green")


class TestParseVerdict:

    def test_defects_are_parsed_with_aliases(self, reviewer):
        content = "Here is my review:\n```json\n" + verdict_json("MAJOR_DEFECT", [
            {"type": "bad-spacing", "severity": "major", "description": "Button hugs the headline",
             "suggestedFix": "#cta { margin-top: 24px; }"},
            {"category": "text-unreadable", "description": "White text on white"},
            {"type": "poor-contrast"},
        ]) + "\n```"

        verdict = reviewer.parse_verdict(content)

        assert verdict.status == ReviewStatus.MAJOR_DEFECT
        assert len(verdict.defects) == 2
        assert verdict.defects[0].suggested_fix == "#cta { margin-top: 24px; }"
        assert verdict.defects[1].severity == "critical"

    def test_status_aliases_and_goal_flag(self, reviewer):
        assert reviewer.parse_verdict(verdict_json("passed")).status == ReviewStatus.PASS
        assert not reviewer.parse_verdict(verdict_json("GOAL_NOT_MET")).goal_accomplished
        assert not reviewer.parse_verdict(verdict_json("MAJOR_DEFECT", goalAccomplished=False)).goal_accomplished

    @pytest.mark.parametrize("content", ["Looks fine to me!", verdict_json("LOOKS_OK"), "[1, 2]"])
    def test_unusable_replies_raise(self, reviewer, content):
        with pytest.raises(ReviewBlocked):
            reviewer.parse_verdict(content)


class TestBuildFeedback:

    def test_critical_first_and_blocked_excluded(self):
        verdict = Verdict(ReviewStatus.CRITICAL_DEFECT, [
            Defect("major", "bad-spacing", "Button hugs the headline"),
            Defect("critical", "text-unreadable", "White text on white", "#cta { color: #111 !important; }"),
            Defect("major", "layout-broken", "Nav overlaps", "nav { margin-top: 70px }", blocked=True,
                   blocked_by="navigation-offset"),
        ])

        lines = build_feedback(verdict, 2)

        assert lines[0] == "Visual review cycle 2: CRITICAL_DEFECT"
        assert lines[1] == "1. [CRITICAL text-unreadable] White text on white"
        assert lines[2] == "   Required change: #cta { color: #111 !important; }"
        assert lines[3] == "2. [MAJOR bad-spacing] Button hugs the headline"
        assert "consistent with neighbouring" in lines[4]
        assert not any("70px" in line for line in lines)

    def test_unmet_goal_reasoning_is_included(self):
        verdict = Verdict(ReviewStatus.GOAL_NOT_MET, [], "The button is still blue", False)

        assert "Goal not met: The button is still blue" in build_feedback(verdict, 1)
