"""
Quality Monitor - structural metrics of generated code and degradation tracking.

Advisory only: nothing here ever blocks a turn. The chain attaches the
resulting warning to the TurnResult.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from ..parsers.code_scanner import strip_strings_and_comments
from ..session import CodeSnapshot, QualityMetrics


@dataclass
class MetricChange:
    metric: str
    previous: float
    current: float
    ratio: float
    message: str

    @property
    def increase_pct(self) -> float:
        return round((self.ratio - 1.0) * 100, 1)


@dataclass
class DegradationReport:
    detected: bool = False
    changes: List[MetricChange] = field(default_factory=list)

    def metric_names(self) -> List[str]:
        return [change.metric for change in self.changes]

    def describe(self) -> str:
        return "; ".join(
            f"{c.message} ({c.metric}: {c.previous:g} -> {c.current:g}, +{c.increase_pct}%)"
            for c in self.changes
        )


class QualityMonitor:
    """Computes QualityMetrics and compares consecutive turns."""

    THRESHOLDS = {
        "total_length": 5000,
        "duplication_ratio": 0.3,
        "complexity_score": 50,
        "target_count": 20,
        "nesting_depth": 5,
    }

    # metric -> (max allowed current/previous ratio, message)
    DEGRADATION_LIMITS = {
        "total_length": (1.5, "Code length increased significantly"),
        "duplication_ratio": (1.3, "Code duplication increased"),
        "complexity_score": (1.4, "Code complexity increased"),
        "nesting_depth": (1.2, "Nesting depth increased"),
    }

    DECISION_PATTERNS = [
        r"\bif\b",
        r"\belse\b",
        r"\bfor\b",
        r"\bwhile\b",
        r"\bcase\b",
        r"\?\s*[^:;\n]+:",
        r"&&",
        r"\|\|",
    ]

    def analyze(self, snapshot: CodeSnapshot) -> QualityMetrics:
        css = snapshot.css
        js = snapshot.js
        all_code = f"{css}\n{js}"

        metrics = dict(
            total_length=len(all_code.strip()),
            css_length=len(css),
            js_length=len(js),
            duplication_ratio=round(self._measure_duplication(all_code), 4),
            complexity_score=self._complexity(js),
            nesting_depth=self._max_nesting(all_code),
            target_count=len(snapshot.targets),
            comment_ratio=round(self._comment_ratio(all_code), 4),
            function_count=len(re.findall(r"function\s+\w+|=>\s*\{|const\s+\w+\s*=\s*function", js)),
        )
        metrics["overall_score"] = self.score(metrics)
        return QualityMetrics(**metrics)

    def score(self, metrics: Dict[str, float]) -> int:
        limits = self.THRESHOLDS
        score = 100.0

        if metrics["total_length"] > limits["total_length"]:
            score -= min(20, (metrics["total_length"] - limits["total_length"]) / 200)
        if metrics["duplication_ratio"] > limits["duplication_ratio"]:
            score -= (metrics["duplication_ratio"] - limits["duplication_ratio"]) * 50
        if metrics["complexity_score"] > limits["complexity_score"]:
            score -= min(20, (metrics["complexity_score"] - limits["complexity_score"]) / 5)
        if metrics["nesting_depth"] > limits["nesting_depth"]:
            score -= (metrics["nesting_depth"] - limits["nesting_depth"]) * 10
        if metrics["target_count"] > limits["target_count"]:
            score -= min(10, metrics["target_count"] - limits["target_count"])

        return int(round(max(0.0, min(100.0, score))))

    def compare(self, current: QualityMetrics, previous: Optional[QualityMetrics]) -> DegradationReport:
        report = DegradationReport()
        if previous is None:
            return report

        for metric, (limit, message) in self.DEGRADATION_LIMITS.items():
            before = getattr(previous, metric)
            after = getattr(current, metric)
            if before <= 0:
                continue
            ratio = after / before
            if ratio > limit:
                report.changes.append(MetricChange(metric, before, after, round(ratio, 3), message))

        report.detected = bool(report.changes)
        return report

    def trend(self, window: Iterable[QualityMetrics]) -> bool:
        """True when the overall score fell on each of the last three turns."""
        scores = [m.overall_score for m in window][-3:]
        if len(scores) < 3:
            return False
        return all(later < earlier for earlier, later in zip(scores, scores[1:]))

    def detect_issues(self, metrics: QualityMetrics) -> List[Dict[str, str]]:
        limits = self.THRESHOLDS
        issues = []
        if metrics.total_length > limits["total_length"]:
            issues.append({
                "severity": "major",
                "type": "code-too-long",
                "message": f"Code length ({metrics.total_length} chars) exceeds {limits['total_length']} chars",
                "suggestion": "Consolidate rules and extract reusable helpers",
            })
        if metrics.duplication_ratio > limits["duplication_ratio"]:
            issues.append({
                "severity": "major",
                "type": "high-duplication",
                "message": f"High code duplication ({metrics.duplication_ratio * 100:.1f}%)",
                "suggestion": "Extract repeated code into functions or shared CSS classes",
            })
        if metrics.complexity_score > limits["complexity_score"]:
            issues.append({
                "severity": "major",
                "type": "high-complexity",
                "message": f"Code complexity ({metrics.complexity_score}) is too high",
                "suggestion": "Break complex logic into smaller functions",
            })
        if metrics.nesting_depth > limits["nesting_depth"]:
            issues.append({
                "severity": "minor",
                "type": "deep-nesting",
                "message": f"Deep nesting ({metrics.nesting_depth} levels)",
                "suggestion": "Flatten conditionals and extract nested blocks",
            })
        if metrics.target_count > limits["target_count"]:
            issues.append({
                "severity": "minor",
                "type": "too-many-targets",
                "message": f"High target count ({metrics.target_count})",
                "suggestion": "Use fewer, more specific selectors",
            })
        return issues

    def summary(self, metrics: QualityMetrics) -> Dict[str, object]:
        score = metrics.overall_score
        if score >= 80:
            status = "Excellent"
        elif score >= 60:
            status = "Good"
        elif score >= 40:
            status = "Fair"
        else:
            status = "Poor"
        issues = self.detect_issues(metrics)
        return {
            "score": score,
            "status": status,
            "issue_count": len(issues),
            "issues": issues,
        }

    def warning(self, report: DegradationReport, declining: bool = False) -> Optional[str]:
        """Caller-facing warning text, or None when quality held up."""
        parts = []
        if report.detected:
            parts.append(f"Code quality degraded: {report.describe()}")
        if declining:
            parts.append("Quality score has dropped on each of the last three turns")
        if not parts:
            return None
        return ". ".join(parts) + ". Consider starting over with a fresh request."

    # ============ MEASUREMENTS ============

    def _measure_duplication(self, code: str) -> float:
        lines = [line.strip() for line in code.split("\n") if len(line.strip()) > 10]
        if not lines:
            return 0.0
        counts: Dict[str, int] = {}
        for line in lines:
            counts[line] = counts.get(line, 0) + 1
        duplicates = sum(count - 1 for count in counts.values() if count > 1)
        return duplicates / len(lines)

    def _complexity(self, js: str) -> int:
        code = strip_strings_and_comments(js)
        complexity = 1
        for pattern in self.DECISION_PATTERNS:
            complexity += len(re.findall(pattern, code))
        return complexity

    def _max_nesting(self, code: str) -> int:
        depth = max_depth = 0
        for char in strip_strings_and_comments(code):
            if char == "{":
                depth += 1
                max_depth = max(max_depth, depth)
            elif char == "}":
                depth = max(0, depth - 1)
        return max_depth

    def _comment_ratio(self, code: str) -> float:
        if not code.strip():
            return 0.0
        comments = re.findall(r"/\*.*?\*/|(?<!:)//.*", code, flags=re.DOTALL)
        return len("".join(comments)) / len(code)

