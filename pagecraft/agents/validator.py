"""
Snapshot Validator - structural checks a candidate must pass before it may
touch the live document.

Checks (all deterministic, no LLM):
1. Syntax: balanced delimiters in CSS/JS, plus the document's own script compile probe
2. Every referenced target exists in the live document (elements the code creates are exempt)
3. No conflicting duplicate-application markers or created ids within one applied bundle
4. REFINEMENT only: no target of the prior snapshot silently dropped
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..errors import CollaboratorTimeout
from ..parsers.code_scanner import (
    created_classes,
    created_ids,
    delimiter_errors,
    has_idempotency_guard,
    idempotency_markers,
    is_self_created,
)
from ..session import CodeSnapshot, Intent, Session
from ..utils.progress import ProgressReporter
from ..utils.timeouts import call_with_timeout

REMOVAL_WORDS = re.compile(r"\b(?:remove|delete|drop|get rid of|undo|revert|take away|hide)\b", re.IGNORECASE)
DOM_MUTATIONS = re.compile(r"\b(?:appendChild|insertAdjacentHTML|insertBefore|prepend|append|before|after)\b|innerHTML\s*\+=")


@dataclass
class ValidationReport:
    """Result of one structural pass over a candidate."""
    passed: bool
    errors: List[Dict] = field(default_factory=list)
    warnings: List[Dict] = field(default_factory=list)

    @property
    def reasons(self) -> List[str]:
        return [f"{e['location']}: {e['issue']} (fix: {e['fix']})" for e in self.errors]

    @property
    def summary(self) -> str:
        if self.passed:
            return f"PASSED ({len(self.warnings)} warning(s))"
        return f"FAILED: {len(self.errors)} error(s), {len(self.warnings)} warning(s)"


class SnapshotValidator(ProgressReporter):
    """Structural validation of candidate snapshots against the live document."""

    def __init__(self, probe_timeout: Optional[float] = 10.0, on_progress: Optional[callable] = None):
        self.probe_timeout = probe_timeout
        self.on_progress = on_progress

    def validate(
        self,
        candidate: CodeSnapshot,
        session: Session,
        intent: Intent = Intent.NEW_FEATURE,
        request: str = "",
        prior: Optional[CodeSnapshot] = None,
    ) -> ValidationReport:
        errors: List[Dict] = []
        warnings: List[Dict] = []

        errors += self._check_syntax(candidate, session)
        errors += self._check_targets(candidate, session)
        marker_errors, marker_warnings = self._check_markers(candidate)
        errors += marker_errors
        warnings += marker_warnings
        if intent == Intent.REFINEMENT:
            errors += self._check_preserved(candidate, prior if prior is not None else session.current, request)

        report = ValidationReport(passed=not errors, errors=errors, warnings=warnings)
        self._notify(f"🔍 [Validator] {report.summary}")
        return report

    # ============ CHECKS ============

    def _check_syntax(self, candidate: CodeSnapshot, session: Session) -> List[Dict]:
        issues = []
        for label, css, js in candidate.bundles():
            for problem in delimiter_errors(css, "css"):
                issues.append(self._issue(f"CSS ({label})", problem, "Close every rule block and bracket"))
            for problem in delimiter_errors(js, "js"):
                issues.append(self._issue(f"JS ({label})", problem, "Balance every (, [ and {"))
            if not js.strip() or any(i["location"] == f"JS ({label})" for i in issues):
                continue
            try:
                report = call_with_timeout(
                    lambda js=js: session.document.check_syntax(js), self.probe_timeout, "Syntax probe"
                )
            except CollaboratorTimeout as e:
                issues.append(self._issue(f"JS ({label})", str(e), "Retry with simpler code"))
                continue
            except Exception as e:
                issues.append(self._issue(f"JS ({label})", f"Syntax probe failed: {e}", "Retry"))
                continue
            if not report.valid:
                for error in report.errors or ["Script does not compile"]:
                    issues.append(self._issue(f"JS ({label})", f"SyntaxError: {error}", "Fix the JavaScript syntax"))
        return issues

    def _check_targets(self, candidate: CodeSnapshot, session: Session) -> List[Dict]:
        ids = created_ids(candidate.js)
        classes = created_classes(candidate.js)
        to_probe = sorted(t for t in candidate.targets if not is_self_created(t, ids, classes))
        if not to_probe:
            return []
        try:
            found = call_with_timeout(
                lambda: session.document.probe_selectors(to_probe), self.probe_timeout, "Selector probe"
            )
        except CollaboratorTimeout as e:
            return [self._issue("Targets", str(e), "Retry")]
        except Exception as e:
            return [self._issue("Targets", f"Selector probe failed: {e}", "Retry")]

        issues = []
        for selector in to_probe:
            if not found.get(selector, False):
                issues.append(self._issue(
                    "Targets",
                    f"Selector '{selector}' does not match any element on the page",
                    "Use a selector from the page context or create the element first",
                ))
        return issues

    def _check_markers(self, candidate: CodeSnapshot):
        errors, warnings = [], []
        for label, _css, js in candidate.bundles():
            if not js.strip():
                continue
            for name, count in self._repeats(idempotency_markers(js)).items():
                errors.append(self._issue(
                    f"JS ({label})",
                    f"Duplicate-application marker '{name}' is set {count} times",
                    "Use one distinct marker per change",
                ))
            for element_id, count in self._repeats(created_ids(js)).items():
                errors.append(self._issue(
                    f"JS ({label})",
                    f"Element id '{element_id}' is created {count} times",
                    "Create each element once and guard with getElementById",
                ))
            if DOM_MUTATIONS.search(js) and not has_idempotency_guard(js):
                warnings.append({
                    "severity": "warning",
                    "location": f"JS ({label})",
                    "issue": "Inserts elements without an idempotency marker",
                    "fix": "Guard with a data-* marker so re-running the code is harmless",
                })
        return errors, warnings

    def _check_preserved(self, candidate: CodeSnapshot, prior: CodeSnapshot, request: str) -> List[Dict]:
        issues = []
        for target in sorted(prior.targets - candidate.targets):
            if self._named_for_removal(target, request):
                continue
            issues.append(self._issue(
                "Refinement",
                f"Existing target '{target}' was dropped",
                "Keep every existing rule and script; only change what was asked",
            ))
        return issues

    # ============ HELPERS ============

    def _named_for_removal(self, target: str, request: str) -> bool:
        if not REMOVAL_WORDS.search(request or ""):
            return False
        lowered = request.lower()
        if target.lower() in lowered:
            return True
        tokens = [t for t in re.split(r"[^a-z]+", target.lower()) if len(t) >= 3]
        return any(re.search(rf"\b{re.escape(t)}", lowered) for t in tokens)

    def _repeats(self, values: List[str]) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for value in values:
            counts[value] = counts.get(value, 0) + 1
        return {k: v for k, v in counts.items() if v > 1}

    def _issue(self, location: str, issue: str, fix: str) -> Dict:
        return {"severity": "critical", "location": location, "issue": issue, "fix": fix}
