"""
Safety rules for visual-review suggestions.

Some fixes a vision model proposes are harmful no matter how confident the
reviewer is: shifting the site navigation down to "make room", hiding the
header, tearing structural elements out of the DOM. Each rule below is a
pattern plus the reason it is refused; `filter_unsafe` applies the table to
the suggested fix text of every defect.
"""

import re
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Pattern

from ..session import Defect, ReviewStatus, Verdict

# Selector tokens that name site chrome (navigation bars, headers, menus)
_NAV = r"[\w-]*?(?:nav|header|menu|masthead|topbar|toolbar)(?:bar|igation|s)?(?=[\s.#:\[,>+~{)'\"-]|$)[\w-]*"
# Selector tokens for page-level layout containers
_STRUCTURAL = r"(?:[\w-]*?(?:nav|header|footer|menu|masthead|topbar)(?:bar|igation|s)?|main|body|html)(?=[\s.#:\[,>+~{)'\"-]|$)[\w-]*"
_SELECTOR_START = r"(?:^|(?<=[\s,>+~.#}'\"(]))"


@dataclass(frozen=True)
class SafetyRule:
    name: str
    pattern: Pattern
    rationale: str

    def matches(self, text: str) -> bool:
        return bool(text) and self.pattern.search(text) is not None


def _rule(name: str, pattern: str, rationale: str) -> SafetyRule:
    return SafetyRule(name, re.compile(pattern, re.IGNORECASE | re.MULTILINE), rationale)


SAFETY_RULES: List[SafetyRule] = [
    _rule(
        "navigation-offset",
        _SELECTOR_START + _NAV + r"[^{}]*\{[^}]*?(?:\b(?:margin-top|padding-top|top|transform|translate\w*)\s*:)",
        "Offsetting the navigation or header pushes the whole page and breaks sticky chrome",
    ),
    _rule(
        "navigation-style-offset",
        r"(?:" + _NAV + r")[^;\n]*?\.style\.(?:marginTop|paddingTop|top|transform)\s*=",
        "Scripted offsets on navigation elements have the same effect as CSS offsets",
    ),
    _rule(
        "structural-position",
        _SELECTOR_START + _STRUCTURAL + r"[^{}]*\{[^}]*?\bposition\s*:\s*(?:absolute|fixed|static)",
        "Changing the positioning scheme of layout containers reflows the entire page",
    ),
    _rule(
        "structural-hide",
        _SELECTOR_START + _STRUCTURAL + r"[^{}]*\{[^}]*?\b(?:display\s*:\s*none|visibility\s*:\s*hidden|opacity\s*:\s*0(?![.\d]))",
        "Hiding site chrome or the main container removes content the user did not ask to touch",
    ),
    _rule(
        "structural-removal",
        r"querySelector(?:All)?\(\s*['\"][^'\"]*?" + _STRUCTURAL + r"[^'\"]*['\"]\s*\)[^;\n]*?\.(?:remove|replaceWith)\s*\(",
        "Removing structural elements cannot be undone by a style overlay",
    ),
    _rule(
        "document-write",
        r"\bdocument\.write(?:ln)?\s*\(",
        "document.write after load replaces the entire document",
    ),
    _rule(
        "navigation-move-prose",
        r"\b(?:move|shift|push|offset|lower|nudge)\s+(?:the\s+)?(?:main\s+|top\s+|site\s+)?(?:navigation|nav|navbar|header|menu)(?:\s+bar)?\s+(?:down|up|lower|higher|below|above)",
        "Moving the navigation is a layout change outside the scope of an overlay fix",
    ),
]


def blocking_rule(defect: Defect, rules: Iterable[SafetyRule] = SAFETY_RULES) -> Optional[SafetyRule]:
    """Return the first rule the defect's suggested fix violates, if any."""
    for rule in rules:
        if rule.matches(defect.suggested_fix):
            return rule
    return None


def mark_unsafe(defects: Iterable[Defect], rules: Iterable[SafetyRule] = SAFETY_RULES) -> List[Defect]:
    """Return the defects with `blocked` set on every one whose fix is prohibited."""
    rules = list(rules)
    marked = []
    for defect in defects:
        rule = blocking_rule(defect, rules)
        if rule is not None:
            defect = replace(defect, blocked=True, blocked_by=rule.name)
        marked.append(defect)
    return marked


def filter_unsafe(defects: Iterable[Defect], rules: Iterable[SafetyRule] = SAFETY_RULES) -> List[Defect]:
    """Drop every defect whose suggested fix matches a prohibited pattern."""
    return [d for d in mark_unsafe(defects, rules) if not d.blocked]


def apply_filter(verdict: Verdict, rules: Iterable[SafetyRule] = SAFETY_RULES) -> Verdict:
    """Mark unsafe defects on a verdict; if nothing actionable is left the verdict becomes PASS.

    Blocked defects stay on the verdict so callers can report them, but they
    never reach corrective feedback.
    """
    marked = mark_unsafe(verdict.defects, rules)
    status = verdict.status
    if marked and all(d.blocked for d in marked):
        status = ReviewStatus.PASS
    return Verdict(
        status=status,
        defects=marked,
        reasoning=verdict.reasoning,
        goal_accomplished=verdict.goal_accomplished or status == ReviewStatus.PASS,
    )
