"""
Session model - the state one editing conversation carries between turns.

A Session is passed by reference to the RefinementChain; nothing else keeps
conversation state. Turns and CodeSnapshots are immutable records: a
refinement always produces a new snapshot that supersedes the previous one.
"""

import re
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, FrozenSet, Iterator, List, Optional, Tuple


class Intent(str, Enum):
    """How a new request relates to the code already on the page."""
    REFINEMENT = "REFINEMENT"
    NEW_FEATURE = "NEW_FEATURE"
    FULL_REWRITE = "FULL_REWRITE"
    AMBIGUOUS = "AMBIGUOUS"


class TurnStatus(str, Enum):
    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"
    NEEDS_CLARIFICATION = "needs_clarification"


class LoopState(str, Enum):
    """Named states of the bounded validation and review loops."""
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXHAUSTED = "EXHAUSTED"
    CANCELLED = "CANCELLED"


class ReviewStatus(str, Enum):
    PASS = "PASS"
    GOAL_NOT_MET = "GOAL_NOT_MET"
    CRITICAL_DEFECT = "CRITICAL_DEFECT"
    MAJOR_DEFECT = "MAJOR_DEFECT"


@dataclass(frozen=True)
class Variation:
    """One alternative treatment of the page (css + js applied together)."""
    number: int
    name: str
    css: str = ""
    js: str = ""


@dataclass(frozen=True)
class QualityMetrics:
    """Structural measurements of a CodeSnapshot."""
    total_length: int = 0
    css_length: int = 0
    js_length: int = 0
    duplication_ratio: float = 0.0
    complexity_score: int = 0
    nesting_depth: int = 0
    target_count: int = 0
    comment_ratio: float = 0.0
    function_count: int = 0
    overall_score: int = 100

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CodeSnapshot:
    """A versioned, complete unit of generated page-mutating output.

    `validated` is only ever set by the ValidationEngine; the RollbackManager
    refuses to commit a snapshot without it.
    """
    variations: Tuple[Variation, ...] = ()
    global_css: str = ""
    global_js: str = ""
    targets: FrozenSet[str] = frozenset()
    version: int = 0
    metrics: Optional[QualityMetrics] = None
    validated: bool = False

    @classmethod
    def empty(cls) -> "CodeSnapshot":
        return cls(validated=True)

    @property
    def is_empty(self) -> bool:
        return not self.css.strip() and not self.js.strip()

    @property
    def css(self) -> str:
        parts = [v.css for v in self.variations if v.css.strip()]
        if self.global_css.strip():
            parts.append(self.global_css)
        return "\n\n".join(parts)

    @property
    def js(self) -> str:
        parts = [v.js for v in self.variations if v.js.strip()]
        if self.global_js.strip():
            parts.append(self.global_js)
        return "\n\n".join(parts)

    @property
    def content(self) -> str:
        """All code as one text block (used for prompts and metrics)."""
        sections = []
        for variation in self.variations:
            sections.append(f"/* Variation {variation.number}: {variation.name} */")
            if variation.css.strip():
                sections.append(f"/* CSS */\n{variation.css}")
            if variation.js.strip():
                sections.append(f"// JS\n{variation.js}")
        if self.global_css.strip():
            sections.append(f"/* Global CSS */\n{self.global_css}")
        if self.global_js.strip():
            sections.append(f"// Global JS\n{self.global_js}")
        return "\n\n".join(sections)

    def bundles(self) -> Iterator[Tuple[str, str, str]]:
        """Yield (label, css, js) for every unit that is applied to the page at once.

        Each variation is applied together with the shared fragments; when
        there are no variations the shared fragments form the only bundle.
        """
        if not self.variations:
            yield "global", self.global_css, self.global_js
            return
        for variation in self.variations:
            css = "\n".join(p for p in (variation.css, self.global_css) if p.strip())
            js = "\n".join(p for p in (variation.js, self.global_js) if p.strip())
            yield f"variation {variation.number}", css, js

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variations": [asdict(v) for v in self.variations],
            "global_css": self.global_css,
            "global_js": self.global_js,
            "targets": sorted(self.targets),
            "version": self.version,
            "metrics": self.metrics.to_dict() if self.metrics else None,
            "validated": self.validated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CodeSnapshot":
        metrics = data.get("metrics")
        return cls(
            variations=tuple(Variation(**v) for v in data.get("variations", [])),
            global_css=data.get("global_css", ""),
            global_js=data.get("global_js", ""),
            targets=frozenset(data.get("targets", [])),
            version=data.get("version", 0),
            metrics=QualityMetrics(**metrics) if metrics else None,
            validated=data.get("validated", False),
        )


@dataclass(frozen=True)
class Defect:
    """A structured finding from the visual reviewer."""
    severity: str  # 'critical' | 'major'
    category: str
    description: str
    suggested_fix: str = ""
    blocked: bool = False
    blocked_by: Optional[str] = None

    @property
    def fingerprint(self) -> str:
        normalized = re.sub(r"\s+", " ", re.sub(r"[^a-z0-9 ]", " ", self.description.lower())).strip()
        return f"{self.category.lower()}|{normalized}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ClarificationOption:
    label: str
    description: str
    intent: Intent = Intent.REFINEMENT
    targets: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "description": self.description}


@dataclass(frozen=True)
class PriorRequest:
    """A previously applied request and the targets it introduced."""
    request: str
    intent: Intent
    targets: Tuple[str, ...]


@dataclass(frozen=True)
class Turn:
    """One user request and its outcome. Immutable once recorded."""
    request: str
    intent: Intent
    status: TurnStatus
    snapshot: Optional[CodeSnapshot] = None
    defects: Tuple[Defect, ...] = ()
    validation_attempts: int = 0
    review_cycles: int = 0
    confidence: float = 0.0
    reason: str = ""
    quality_warning: Optional[str] = None
    needs_manual_review: bool = False
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request": self.request,
            "intent": self.intent.value,
            "status": self.status.value,
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
            "defects": [d.to_dict() for d in self.defects],
            "validation_attempts": self.validation_attempts,
            "review_cycles": self.review_cycles,
            "confidence": self.confidence,
            "reason": self.reason,
            "quality_warning": self.quality_warning,
            "needs_manual_review": self.needs_manual_review,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Turn":
        snapshot = data.get("snapshot")
        return cls(
            request=data["request"],
            intent=Intent(data["intent"]),
            status=TurnStatus(data["status"]),
            snapshot=CodeSnapshot.from_dict(snapshot) if snapshot else None,
            defects=tuple(Defect(**d) for d in data.get("defects", [])),
            validation_attempts=data.get("validation_attempts", 0),
            review_cycles=data.get("review_cycles", 0),
            confidence=data.get("confidence", 0.0),
            reason=data.get("reason", ""),
            quality_warning=data.get("quality_warning"),
            needs_manual_review=data.get("needs_manual_review", False),
            timestamp=data.get("timestamp", ""),
        )


@dataclass
class PendingClarification:
    request: str
    options: List[ClarificationOption]


@dataclass
class Session:
    """One continuous editing conversation against one live document."""
    document: Any
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    current: CodeSnapshot = field(default_factory=CodeSnapshot.empty)
    turns: List[Turn] = field(default_factory=list)
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    pending_clarification: Optional[PendingClarification] = None
    quality_window: Deque[QualityMetrics] = field(default_factory=lambda: deque(maxlen=10))
    # True while the live document shows something other than `current`
    document_dirty: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)
    _version: int = field(default=0, repr=False)

    def next_version(self) -> int:
        self._version += 1
        return self._version

    @property
    def has_prior_code(self) -> bool:
        return not self.current.is_empty

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def prior_requests(self) -> List[PriorRequest]:
        """Applied requests, each with the targets it added that are still live."""
        live_targets = self.current.targets
        previous: FrozenSet[str] = frozenset()
        prior = []
        for turn in self.turns:
            if turn.status != TurnStatus.APPLIED or turn.snapshot is None:
                continue
            if turn.intent == Intent.FULL_REWRITE:
                prior = []
                previous = frozenset()
            added = turn.snapshot.targets - previous
            previous = turn.snapshot.targets
            still_live = tuple(sorted(t for t in added if t in live_targets))
            if still_live:
                prior.append(PriorRequest(turn.request, turn.intent, still_live))
        return prior

    def history_summary(self, limit: int = 8) -> List[str]:
        lines = []
        for idx, turn in enumerate(self.turns[-limit:], 1):
            targets = ", ".join(sorted(turn.snapshot.targets)) if turn.snapshot else "-"
            lines.append(f"{idx}. [{turn.status.value}/{turn.intent.value}] \"{turn.request}\" -> {targets}")
        return lines


@dataclass
class Verdict:
    """One visual review of before/after images."""
    status: ReviewStatus
    defects: List[Defect] = field(default_factory=list)
    reasoning: str = ""
    goal_accomplished: bool = True

    @property
    def fingerprints(self) -> Tuple[str, ...]:
        return tuple(sorted(d.fingerprint for d in self.defects if not d.blocked))

    @property
    def unblocked(self) -> List[Defect]:
        return [d for d in self.defects if not d.blocked]
