import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from pagecraft.agents.intent_classifier import IntentClassifierAgent
from pagecraft.errors import ClassificationFailed
from pagecraft.session import Intent, PriorRequest

from conftest import judgement

BUTTON = PriorRequest("make the button green", Intent.NEW_FEATURE, ("#cta",))
HEADLINE = PriorRequest("make the headline bigger", Intent.NEW_FEATURE, (".hero-title",))


def classifier(*replies, threshold=0.6):
    return IntentClassifierAgent(llm=FakeListChatModel(responses=list(replies) or ["{}"]), threshold=threshold)


class TestRules:

    def test_first_request_is_always_a_new_feature(self):
        result = classifier(judgement("REFINEMENT", 0.9)).classify("make it darker", has_prior_code=False)

        assert result.intent == Intent.NEW_FEATURE
        assert result.confidence == 1.0
        assert result.source == "rule"

    def test_explicit_discard_language_is_a_full_rewrite(self):
        result = classifier(judgement("REFINEMENT", 0.9)).classify(
            "forget that, start over with a blue theme", True, [BUTTON], ["#cta"]
        )

        assert result.intent == Intent.FULL_REWRITE

    def test_rewrite_is_never_inferred_from_the_model_alone(self):
        result = classifier(judgement("FULL_REWRITE", 0.9)).classify(
            "use a serif font for the page", True, [BUTTON], ["#cta"]
        )

        assert result.intent == Intent.NEW_FEATURE

    def test_empty_request_is_rejected(self):
        with pytest.raises(ClassificationFailed):
            classifier().classify("   ", True)


class TestReferences:

    def test_pronoun_with_two_unrelated_targets_is_ambiguous(self):
        result = classifier(judgement("REFINEMENT", 0.8)).classify(
            "change it", True, [BUTTON, HEADLINE], ["#cta", ".hero-title"]
        )

        assert result.intent == Intent.AMBIGUOUS
        assert result.confidence < 0.6
        assert len(result.candidates) >= 2
        assert result.candidates[0].targets == ("#cta",)
        assert "button" in result.candidates[0].label
        assert result.candidates[-1].intent == Intent.NEW_FEATURE

    def test_pronoun_with_one_target_biases_toward_refinement(self):
        result = classifier(judgement("NEW_FEATURE", 0.5)).classify("make it darker", True, [BUTTON], ["#cta"])

        assert result.intent == Intent.REFINEMENT
        assert result.confidence >= 0.6
        assert result.focus_targets == ("#cta",)

    def test_naming_an_earlier_element_focuses_it(self):
        result = classifier(judgement("REFINEMENT", 0.5)).classify(
            "make the button a bit darker", True, [BUTTON, HEADLINE], ["#cta", ".hero-title"]
        )

        assert result.intent == Intent.REFINEMENT
        assert result.focus_targets == ("#cta",)

    def test_low_confidence_becomes_ambiguous_with_options(self):
        result = classifier(judgement("REFINEMENT", 0.3)).classify("purple", True, [BUTTON], ["#cta"])

        assert result.intent == Intent.AMBIGUOUS
        assert len(result.candidates) >= 2

    @pytest.mark.parametrize("threshold,expected", [(0.5, Intent.NEW_FEATURE), (0.9, Intent.AMBIGUOUS)])
    def test_threshold_is_configurable(self, threshold, expected):
        result = classifier(judgement("NEW_FEATURE", 0.7), threshold=threshold).classify(
            "add a footer banner", True, [BUTTON], ["#cta"]
        )

        assert result.intent == expected


class TestModelReplies:

    def test_percent_confidence_is_normalized(self):
        result = classifier(judgement("NEW_FEATURE", 85)).classify("add a countdown", True, [BUTTON], ["#cta"])

        assert result.confidence == pytest.approx(0.85)

    def test_fenced_reply_with_trailing_comma_is_accepted(self):
        raw = '```json\n{"type": "NEW_FEATURE", "confidence": 0.9, "reasoning": "adds a badge",}\n```'
        result = classifier(raw).classify("add a badge", True, [BUTTON], ["#cta"])

        assert result.intent == Intent.NEW_FEATURE
        assert result.source == "model"

    def test_unusable_reply_falls_back_to_lexical_rules(self):
        result = classifier("Sorry, I cannot help").classify("make it darker", True, [BUTTON], ["#cta"])

        assert result.intent == Intent.REFINEMENT
        assert result.source == "lexical"

    def test_no_model_and_no_lexical_rule_fails(self):
        with pytest.raises(ClassificationFailed):
            classifier("???").classify("purple", True, [BUTTON], ["#cta"])
