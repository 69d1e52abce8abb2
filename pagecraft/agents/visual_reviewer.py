"""
Visual Reviewer Agent - the "eyes" of the refinement loop.
Compares before/after screenshots of the live document with a vision model
and returns a structured Verdict. The reviewer only reports; deciding what to
do with its findings belongs to the review loop and the safety rules.
"""

import base64
import json
import re
from typing import List, Optional

from langchain_core.messages import HumanMessage

from ..errors import CollaboratorTimeout, ReviewBlocked
from ..prompts.templates import VISUAL_REVIEW_PROMPT
from ..session import Defect, ReviewStatus, Verdict
from ..utils.progress import ProgressReporter
from ..utils.timeouts import call_with_timeout
from .providers import build_chat_model, extract_content, model_name

CRITICAL_CATEGORIES = (
    "text-unreadable",
    "layout-broken",
    "element-missing",
    "element-overlapping",
    "element-duplicated",
)
MAJOR_CATEGORIES = (
    "text-misaligned",
    "bad-spacing",
    "poor-contrast",
    "visual-hierarchy-broken",
    "color-disharmony",
)

# Used when the reviewer names a defect but offers no fix
DEFAULT_FIXES = {
    "text-unreadable": "Raise text contrast: light text on dark backgrounds, dark text on light ones, with !important",
    "layout-broken": "Keep the element in normal flow: position: relative; width: auto; no negative margins",
    "element-missing": "Make sure the selector matches the intended element and the element is visible (display, opacity, size)",
    "element-overlapping": "Give the element its own space: margin, padding and a z-index above its neighbours",
    "element-duplicated": "Guard inserted elements with a data-* marker and check for it before inserting again",
    "text-misaligned": "Align with the surrounding content: text-align and flexbox alignment on the parent",
    "bad-spacing": "Use spacing consistent with neighbouring elements (margin/padding in the same scale)",
    "poor-contrast": "Increase the contrast ratio between text and background to at least 4.5:1",
    "visual-hierarchy-broken": "Restore heading/body size and weight relationships relative to the page",
    "color-disharmony": "Pick a color from the page's existing palette instead of a clashing hue",
}

_STATUS_ALIASES = {
    "PASS": ReviewStatus.PASS,
    "PASSED": ReviewStatus.PASS,
    "GOAL_NOT_MET": ReviewStatus.GOAL_NOT_MET,
    "CRITICAL_DEFECT": ReviewStatus.CRITICAL_DEFECT,
    "MAJOR_DEFECT": ReviewStatus.MAJOR_DEFECT,
}


class VisualReviewerAgent(ProgressReporter):
    """Vision-model reviewer for applied overlays."""

    MAX_CODE_CHARS = 6000

    def __init__(self, llm=None, timeout: Optional[float] = 90.0, on_progress: Optional[callable] = None):
        self.on_progress = on_progress
        self.timeout = timeout
        if llm is None:
            llm, _ = build_chat_model("reviewer", temperature=0.1, max_tokens=4096)
        self.llm = llm
        self.model = model_name(llm)

    def review(self, before: bytes, after: bytes, request: str, code: str = "") -> Verdict:
        """Review one before/after pair. Raises ReviewBlocked or CollaboratorTimeout."""
        if before == after:
            self._notify("👁️ [Reviewer] Page looks identical after the change")
            return Verdict(
                status=ReviewStatus.GOAL_NOT_MET,
                defects=[Defect(
                    severity="critical",
                    category="element-missing",
                    description="The page looks identical before and after applying the code; the change is not visible",
                    suggested_fix=DEFAULT_FIXES["element-missing"],
                )],
                reasoning="No visible change between before and after screenshots",
                goal_accomplished=False,
            )

        message = self._build_message(before, after, request, code)
        self._notify(f"👁️ [Reviewer] Comparing screenshots with {self.model}...")
        try:
            response = call_with_timeout(lambda: self.llm.invoke([message]), self.timeout, "Visual review")
        except CollaboratorTimeout:
            raise
        except Exception as e:
            raise ReviewBlocked(f"Visual review model error: {e}") from e

        verdict = self.parse_verdict(extract_content(response))
        self._notify(f"👁️ [Reviewer] {verdict.status.value} with {len(verdict.defects)} defect(s)")
        return verdict

    def _build_message(self, before: bytes, after: bytes, request: str, code: str) -> HumanMessage:
        if len(code) > self.MAX_CODE_CHARS:
            code = code[:self.MAX_CODE_CHARS] + "\n... (truncated)"
        prompt = VISUAL_REVIEW_PROMPT.format(request=request, code=code or "(not provided)")
        return HumanMessage(
            content=[
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": self._data_url(before)}},
                {"type": "image_url", "image_url": {"url": self._data_url(after)}},
            ]
        )

    def _data_url(self, image: bytes) -> str:
        return f"data:image/png;base64,{base64.b64encode(image).decode('utf-8')}"

    # ============ PARSING ============

    def parse_verdict(self, content: str) -> Verdict:
        match = re.search(r"\{[\s\S]*\}", content or "")
        if not match:
            raise ReviewBlocked("Reviewer reply contained no JSON")
        raw = re.sub(r",\s*([}\]])", r"\1", match.group())
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ReviewBlocked(f"Reviewer reply is not valid JSON: {e.msg}") from e
        if not isinstance(data, dict):
            raise ReviewBlocked("Reviewer reply is not a JSON object")

        status = _STATUS_ALIASES.get(str(data.get("status", "")).strip().upper())
        if status is None:
            raise ReviewBlocked(f"Unknown review status: {data.get('status')!r}")

        defects = []
        for item in data.get("defects") or []:
            if isinstance(item, dict) and item.get("description"):
                defects.append(self._parse_defect(item))

        goal = data.get("goalAccomplished", data.get("goal_accomplished"))
        if goal is None:
            goal = status != ReviewStatus.GOAL_NOT_MET
        return Verdict(
            status=status,
            defects=defects,
            reasoning=str(data.get("reasoning", "")),
            goal_accomplished=bool(goal),
        )

    def _parse_defect(self, item: dict) -> Defect:
        category = str(item.get("type") or item.get("category") or "layout-broken").strip().lower()
        severity = str(item.get("severity", "")).strip().lower()
        if severity not in ("critical", "major"):
            severity = "critical" if category in CRITICAL_CATEGORIES else "major"
        return Defect(
            severity=severity,
            category=category,
            description=str(item["description"]).strip(),
            suggested_fix=str(item.get("suggestedFix") or item.get("suggested_fix") or "").strip(),
        )


def build_feedback(verdict: Verdict, cycle: int) -> List[str]:
    """Corrective context for the next generation attempt.

    Only unblocked defects are included, critical ones first.
    """
    lines = [f"Visual review cycle {cycle}: {verdict.status.value}"]
    if not verdict.goal_accomplished and verdict.reasoning:
        lines.append(f"Goal not met: {verdict.reasoning}")
    defects = sorted(verdict.unblocked, key=lambda d: 0 if d.severity == "critical" else 1)
    for idx, defect in enumerate(defects, 1):
        fix = defect.suggested_fix or DEFAULT_FIXES.get(defect.category, "Fix the visual problem described")
        lines.append(f"{idx}. [{defect.severity.upper()} {defect.category}] {defect.description}")
        lines.append(f"   Required change: {fix}")
    lines.append("Keep every previous change and add the fixes above; do not touch navigation or header layout.")
    return lines
