import pytest

from pagecraft.review.safety_rules import apply_filter, blocking_rule, filter_unsafe
from pagecraft.session import Defect, ReviewStatus, Verdict


def fix(text, description="Something looks off"):
    return Defect("major", "bad-spacing", description, suggested_fix=text)


class TestBlockingRules:

    @pytest.mark.parametrize("suggestion,rule", [
        ("nav.primary { margin-top: 70px }", "navigation-offset"),
        ("header .menu { transform: translateY(40px); }", "navigation-offset"),
        ("document.querySelector('nav').style.marginTop = '60px';", "navigation-style-offset"),
        ("header { position: fixed; }", "structural-position"),
        (".site-header { display: none !important; }", "structural-hide"),
        ("document.querySelector('footer').remove();", "structural-removal"),
        ("document.write('<div>Sale</div>');", "document-write"),
        ("Move the navigation bar down by 60px so the banner fits", "navigation-move-prose"),
    ])
    def test_prohibited_suggestions(self, suggestion, rule):
        assert blocking_rule(fix(suggestion)).name == rule

    @pytest.mark.parametrize("suggestion", [
        "#cta { margin-top: 24px; }",
        ".hero-title { color: #111 !important; }",
        "footer { padding: 2rem; }",
        "Increase the contrast of the button text",
        "",
    ])
    def test_safe_suggestions_pass(self, suggestion):
        assert blocking_rule(fix(suggestion)) is None

    def test_only_the_suggested_fix_is_checked(self):
        defect = fix("#cta { margin-top: 24px; }", description="The button touches the nav bar; move the nav down")

        assert blocking_rule(defect) is None


class TestFilter:

    def test_filter_unsafe_keeps_actionable_defects(self):
        safe = fix("#cta { margin-top: 24px; }")
        unsafe = fix("nav.primary { margin-top: 70px }")

        assert filter_unsafe([unsafe, safe]) == [safe]

    def test_verdict_with_only_unsafe_fixes_becomes_pass(self):
        verdict = Verdict(ReviewStatus.MAJOR_DEFECT, [fix("nav.primary { margin-top: 70px }")], "", False)

        filtered = apply_filter(verdict)

        assert filtered.status == ReviewStatus.PASS
        assert filtered.goal_accomplished
        assert filtered.defects[0].blocked
        assert filtered.defects[0].blocked_by == "navigation-offset"
        assert filtered.unblocked == []
        assert verdict.status == ReviewStatus.MAJOR_DEFECT

    def test_mixed_verdict_keeps_its_status(self):
        verdict = Verdict(ReviewStatus.MAJOR_DEFECT, [
            fix("nav.primary { margin-top: 70px }"),
            fix("#cta { margin-top: 24px; }", description="Button too close to the headline"),
        ])

        filtered = apply_filter(verdict)

        assert filtered.status == ReviewStatus.MAJOR_DEFECT
        assert [d.description for d in filtered.unblocked] == ["Button too close to the headline"]
        assert len(filtered.fingerprints) == 1

    def test_verdict_without_defects_is_untouched(self):
        verdict = Verdict(ReviewStatus.GOAL_NOT_MET, [], "nothing changed", False)

        assert apply_filter(verdict).status == ReviewStatus.GOAL_NOT_MET
