"""
Intent Classifier Agent - decides how a new request relates to the applied code.

One model call makes the semantic judgement; explicit discard language and
pronoun references are resolved lexically so that a missing or slow model
never blocks a turn that can be classified from the text alone.
"""

import json
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from langchain_core.prompts import ChatPromptTemplate

from ..errors import ClassificationFailed, CollaboratorTimeout
from ..prompts.templates import INTENT_CLASSIFIER_PROMPT
from ..session import ClarificationOption, Intent, PriorRequest
from ..utils.progress import ProgressReporter
from ..utils.timeouts import call_with_timeout
from .providers import build_chat_model, extract_content, model_name

DISCARD_PHRASES = [
    r"start (?:all )?over",
    r"start from scratch",
    r"from scratch",
    r"forget (?:all|about|everything|that|this|the|it)\b",
    r"scrap (?:all|everything|that|this|it)\b",
    r"throw (?:it|that|everything) away",
    r"discard (?:all|everything|the|that|this|it)\b",
    r"undo everything",
    r"remove (?:all|everything) (?:the )?(?:changes|previous)",
    r"ignore (?:all |everything )?(?:previous|earlier|prior)",
    r"reset (?:all|everything)",
    r"begin again",
    r"new approach",
]

ANAPHORA = re.compile(r"\b(?:it|its|it's|that|this|them|those|these|they|same one)\b", re.IGNORECASE)
ADDITIVE = re.compile(r"\b(?:also|add|another|additionally|as well|new|create|insert)\b", re.IGNORECASE)

# Nouns worth remembering from earlier requests when labelling a target group
UI_NOUNS = {
    "badge", "banner", "button", "card", "cta", "footer", "form", "header", "heading",
    "headline", "hero", "icon", "image", "input", "link", "logo", "menu", "nav", "navbar",
    "picture", "price", "section", "sidebar", "subtitle", "text", "title", "popup", "modal",
    "timer", "countdown", "label", "checkbox", "dropdown", "slider", "carousel", "table",
}

_TYPE_ALIASES = {
    "REFINEMENT": Intent.REFINEMENT,
    "REFINE": Intent.REFINEMENT,
    "NEW_FEATURE": Intent.NEW_FEATURE,
    "NEW": Intent.NEW_FEATURE,
    "FULL_REWRITE": Intent.FULL_REWRITE,
    "COURSE_REVERSAL": Intent.FULL_REWRITE,
    "REWRITE": Intent.FULL_REWRITE,
    "AMBIGUOUS": Intent.AMBIGUOUS,
}


@dataclass
class IntentResult:
    """Classification of one request."""
    intent: Intent
    confidence: float
    reasoning: str = ""
    candidates: List[ClarificationOption] = field(default_factory=list)
    source: str = "model"  # 'model' | 'lexical' | 'rule'
    focus_targets: Tuple[str, ...] = ()


@dataclass
class TargetGroup:
    """Targets introduced by one earlier request, with words that name them."""
    request: str
    targets: Tuple[str, ...]
    keywords: Tuple[str, ...]

    @property
    def label(self) -> str:
        noun = next((k for k in self.keywords if k in UI_NOUNS), None)
        shown = ", ".join(self.targets[:2])
        return f"The {noun} ({shown})" if noun else shown


class IntentClassifierAgent(ProgressReporter):
    """
    Intent Classification Agent.
    REFINEMENT / NEW_FEATURE / FULL_REWRITE / AMBIGUOUS with a confidence in [0, 1].
    """

    def __init__(
        self,
        llm=None,
        threshold: float = 0.6,
        timeout: Optional[float] = 20.0,
        on_progress: Optional[callable] = None,
    ):
        self.on_progress = on_progress
        self.threshold = threshold
        self.timeout = timeout
        if llm is None:
            llm, _ = build_chat_model("classifier", temperature=0.1, max_tokens=1024)
        self.llm = llm
        self.model = model_name(llm)
        self.prompt = ChatPromptTemplate.from_template(INTENT_CLASSIFIER_PROMPT)
        self._discard = [re.compile(rf"\b{p}", re.IGNORECASE) for p in DISCARD_PHRASES]

    def classify(
        self,
        request: str,
        has_prior_code: bool,
        prior_requests: Sequence[PriorRequest] = (),
        current_targets: Sequence[str] = (),
    ) -> IntentResult:
        """Classify `request` against the session's prior code and requests."""
        text = (request or "").strip()
        if not text:
            raise ClassificationFailed("The request is empty")

        discards = self.is_discard(text)
        if not has_prior_code:
            # Nothing to refine, rewrite or confuse: every request adds something
            return IntentResult(Intent.NEW_FEATURE, 1.0, "No code applied yet", source="rule")
        if discards:
            return IntentResult(Intent.FULL_REWRITE, 0.95, "Explicit discard language", source="lexical")

        groups = self._target_groups(prior_requests)
        try:
            result = call_with_timeout(
                lambda: self._model_judgement(text, prior_requests, current_targets),
                self.timeout,
                "Intent classification",
            )
        except (CollaboratorTimeout, ClassificationFailed) as e:
            self._notify(f"⚠️ [Classifier] Model judgement unavailable ({e}); using lexical rules")
            result = self._lexical_fallback(text, groups)
        except Exception as e:
            self._notify(f"⚠️ [Classifier] Model call failed ({e}); using lexical rules")
            result = self._lexical_fallback(text, groups)

        if result.intent == Intent.FULL_REWRITE:
            # Never inferred: only explicit discard language counts
            result.intent = Intent.REFINEMENT if ANAPHORA.search(text) else Intent.NEW_FEATURE
            result.reasoning = f"{result.reasoning} (no discard language; not a rewrite)".strip()

        result = self._apply_reference_bias(text, result, groups)

        if result.intent != Intent.AMBIGUOUS and result.confidence < self.threshold:
            result.intent = Intent.AMBIGUOUS
        if result.intent == Intent.AMBIGUOUS and len(result.candidates) < 2:
            result.candidates = self._default_options(groups, current_targets, result.candidates)

        self._notify(
            f"🧭 [Classifier] {result.intent.value} ({result.confidence:.2f}, {result.source})"
        )
        return result

    def is_discard(self, text: str) -> bool:
        return any(p.search(text) for p in self._discard)

    # ============ MODEL JUDGEMENT ============

    def _model_judgement(
        self,
        text: str,
        prior_requests: Sequence[PriorRequest],
        current_targets: Sequence[str],
    ) -> IntentResult:
        messages = self.prompt.format_messages(
            request=text,
            has_prior_code="yes",
            current_targets="\n".join(f"- {t}" for t in current_targets) or "- (none recorded)",
            prior_requests="\n".join(
                f"{i}. \"{p.request}\" -> {', '.join(p.targets)}" for i, p in enumerate(prior_requests, 1)
            ) or "(none)",
        )
        if self.verbose_logs:
            print(f"Invoking classifier ({self.model})...")
        response = self.llm.invoke(messages)
        return self._parse_judgement(extract_content(response))

    def _parse_judgement(self, content: str) -> IntentResult:
        match = re.search(r"\{[\s\S]*\}", content)
        if not match:
            raise ClassificationFailed("Classifier reply contained no JSON")
        raw = re.sub(r",\s*([}\]])", r"\1", match.group())
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ClassificationFailed(f"Classifier reply is not valid JSON: {e.msg}") from e

        intent = _TYPE_ALIASES.get(str(data.get("type", "")).strip().upper())
        if intent is None:
            raise ClassificationFailed(f"Unknown intent type: {data.get('type')!r}")

        try:
            confidence = float(data.get("confidence", 0))
        except (TypeError, ValueError):
            confidence = 0.0
        if confidence > 1:
            confidence /= 100.0
        confidence = max(0.0, min(1.0, confidence))

        candidates = []
        for item in data.get("candidates") or []:
            if isinstance(item, dict) and item.get("label"):
                candidates.append(ClarificationOption(
                    label=str(item["label"]),
                    description=str(item.get("description", "")),
                ))

        return IntentResult(
            intent=intent,
            confidence=confidence,
            reasoning=str(data.get("reasoning", "")),
            candidates=candidates,
            source="model",
        )

    # ============ LEXICAL RULES ============

    def _lexical_fallback(self, text: str, groups: List[TargetGroup]) -> IntentResult:
        mentioned = self._mentioned_groups(text, groups)
        if len(mentioned) == 1:
            return IntentResult(Intent.REFINEMENT, 0.75, "Names an element changed earlier",
                                source="lexical", focus_targets=mentioned[0].targets)
        if ANAPHORA.search(text) and not mentioned:
            return IntentResult(Intent.REFINEMENT, 0.7, "Refers back to the earlier change", source="lexical")
        if ADDITIVE.search(text):
            return IntentResult(Intent.NEW_FEATURE, 0.65, "Asks for an additional change", source="lexical")
        raise ClassificationFailed("Could not classify the request without the model")

    def _apply_reference_bias(self, text: str, result: IntentResult, groups: List[TargetGroup]) -> IntentResult:
        """Pronouns and known element names point back at earlier changes."""
        mentioned = self._mentioned_groups(text, groups)
        has_pronoun = bool(ANAPHORA.search(text))

        if len(mentioned) == 1 and result.intent in (Intent.REFINEMENT, Intent.AMBIGUOUS):
            result.intent = Intent.REFINEMENT
            result.confidence = max(result.confidence, min(0.95, self.threshold + 0.15))
            result.focus_targets = mentioned[0].targets
            return result

        if not has_pronoun or mentioned:
            return result

        if len(groups) >= 2:
            result.intent = Intent.AMBIGUOUS
            result.confidence = min(result.confidence, max(0.0, self.threshold - 0.1))
            result.reasoning = f"'{text}' could refer to {len(groups)} different earlier changes"
            result.candidates = self._group_options(groups)
            return result

        flip = result.intent == Intent.AMBIGUOUS or (
            result.intent == Intent.NEW_FEATURE and result.confidence < 0.8
        )
        if flip or (result.intent == Intent.REFINEMENT and result.confidence < self.threshold):
            result.intent = Intent.REFINEMENT
            result.confidence = max(min(0.95, result.confidence + 0.2), self.threshold)
            if groups:
                result.focus_targets = groups[0].targets
        return result

    def _target_groups(self, prior_requests: Sequence[PriorRequest]) -> List[TargetGroup]:
        groups = []
        for prior in prior_requests:
            keywords = set()
            for target in prior.targets:
                for token in re.split(r"[^a-zA-Z]+", target.lower()):
                    if len(token) >= 3 or token in UI_NOUNS:
                        keywords.add(token)
            for word in re.findall(r"[a-zA-Z]+", prior.request.lower()):
                if word in UI_NOUNS:
                    keywords.add(word)
            groups.append(TargetGroup(prior.request, prior.targets, tuple(sorted(keywords))))
        return groups

    def _mentioned_groups(self, text: str, groups: List[TargetGroup]) -> List[TargetGroup]:
        words = set(re.findall(r"[a-z]+", text.lower()))
        words |= {w[:-1] for w in words if w.endswith("s")}
        return [g for g in groups if words & set(g.keywords)]

    def _group_options(self, groups: List[TargetGroup]) -> List[ClarificationOption]:
        options = [
            ClarificationOption(
                label=group.label,
                description=f"Refine the change made for \"{group.request}\"",
                intent=Intent.REFINEMENT,
                targets=group.targets,
            )
            for group in groups
        ]
        options.append(ClarificationOption(
            label="Something else on the page",
            description="Leave earlier changes alone and work on a different element",
            intent=Intent.NEW_FEATURE,
        ))
        return options

    def _default_options(
        self,
        groups: List[TargetGroup],
        current_targets: Sequence[str],
        existing: List[ClarificationOption],
    ) -> List[ClarificationOption]:
        if len(groups) >= 2:
            return self._group_options(groups)
        shown = ", ".join(list(current_targets)[:3]) or "the element changed earlier"
        options = list(existing)
        options.append(ClarificationOption(
            label="Modify the existing change",
            description=f"Adjust what was already changed ({shown})",
            intent=Intent.REFINEMENT,
            targets=tuple(current_targets),
        ))
        options.append(ClarificationOption(
            label="Work with a different element",
            description="Keep the existing change and apply this request somewhere else",
            intent=Intent.NEW_FEATURE,
        ))
        return options
