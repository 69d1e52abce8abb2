"""
Generation Gateway - the boundary to the external code-generation model.
Builds the structured prompt (request + history + prior code), invokes the
model and parses the reply into a CodeSnapshot. Never touches session state.
Primary: NVIDIA NIM
Fallback: Groq → Gemini
"""

import json
from typing import Any, Dict, Optional, Sequence

from langchain_core.prompts import ChatPromptTemplate

from ..errors import CollaboratorTimeout, GenerationFailed
from ..parsers.snapshot_parser import SnapshotParser
from ..prompts.templates import (
    CODE_GENERATION_PROMPT,
    CORRECTION_BLOCK,
    FULL_REWRITE_RULES,
    NEW_FEATURE_RULES,
    PRIOR_CODE_BLOCK,
    REFINEMENT_RULES,
)
from ..session import CodeSnapshot, Intent
from ..utils.progress import ProgressReporter
from ..utils.timeouts import call_with_timeout
from .providers import build_chat_model, extract_content, model_name


class GenerationGateway(ProgressReporter):
    """Code Generation Agent for page overlays (CSS + JS variations)."""

    MAX_CONTEXT_CHARS = 4000

    def __init__(self, llm=None, timeout: Optional[float] = 120.0, on_progress: Optional[callable] = None):
        self.on_progress = on_progress
        self.timeout = timeout
        if llm is None:
            llm, _ = build_chat_model("generator", temperature=0.3, max_tokens=16384)
        self.llm = llm
        self.model = model_name(llm)
        self.prompt = ChatPromptTemplate.from_template(CODE_GENERATION_PROMPT)
        self.parser = SnapshotParser()

    def generate(
        self,
        request: str,
        intent: Intent,
        prior: Optional[CodeSnapshot],
        history_summary: Sequence[str] = (),
        target_context: Optional[Dict[str, Any]] = None,
        corrective_context: Sequence[str] = (),
    ) -> CodeSnapshot:
        """Generate one candidate snapshot. Raises GenerationFailed."""
        messages = self.build_messages(request, intent, prior, history_summary, target_context, corrective_context)
        self._notify(f"💻 [Generator] Requesting {intent.value.lower()} code from {self.model}...")

        try:
            response = call_with_timeout(lambda: self.llm.invoke(messages), self.timeout, "Code generation")
        except CollaboratorTimeout as e:
            raise GenerationFailed(str(e)) from e
        except Exception as e:
            raise GenerationFailed(f"Generation model error: {e}") from e

        content = extract_content(response)
        if not content:
            raise GenerationFailed("Generation model returned an empty reply")

        reply = self.parser.parse(content)
        snapshot = reply.to_snapshot()
        meta = self.parser.get_metadata()
        self._notify(
            f"✅ [Generator] {meta.variation_count} variation(s), "
            f"{len(snapshot.targets)} target(s){' (repaired reply)' if meta.repaired else ''}"
        )
        return snapshot

    def build_messages(
        self,
        request: str,
        intent: Intent,
        prior: Optional[CodeSnapshot],
        history_summary: Sequence[str] = (),
        target_context: Optional[Dict[str, Any]] = None,
        corrective_context: Sequence[str] = (),
    ):
        prior = prior or CodeSnapshot.empty()
        strategy, rules = self._strategy(intent, prior)
        return self.prompt.format_messages(
            request=request,
            strategy=strategy,
            strategy_rules=rules,
            prior_code_block=self._prior_code_block(intent, prior),
            history="\n".join(history_summary) or "(first request)",
            target_context=self._format_context(target_context),
            corrective_block=self._corrective_block(corrective_context),
        )

    def _strategy(self, intent: Intent, prior: CodeSnapshot):
        if intent == Intent.REFINEMENT and not prior.is_empty:
            preserved = "\n".join(f"   - \"{t}\"" for t in sorted(prior.targets)) or "   - (none)"
            return "PRESERVE_EXISTING", REFINEMENT_RULES.format(preserved_targets=preserved)
        if intent == Intent.FULL_REWRITE:
            return "REWRITE", FULL_REWRITE_RULES
        return "ADD_ALONGSIDE", NEW_FEATURE_RULES

    def _prior_code_block(self, intent: Intent, prior: CodeSnapshot) -> str:
        if prior.is_empty:
            return "## EXISTING CODE: none (the page is unmodified)"
        if intent == Intent.FULL_REWRITE:
            return "## EXISTING CODE: discarded at the user's request"
        if intent == Intent.REFINEMENT:
            label = "existing, preserve unless directly contradicted"
        else:
            label = "do-not-break context, keep it working"
        return PRIOR_CODE_BLOCK.format(label=label, code=self._prior_as_json(prior))

    def _prior_as_json(self, prior: CodeSnapshot) -> str:
        return json.dumps(
            {
                "variations": [
                    {"number": v.number, "name": v.name, "css": v.css, "js": v.js}
                    for v in prior.variations
                ],
                "globalCSS": prior.global_css,
                "globalJS": prior.global_js,
            },
            indent=2,
        )

    def _format_context(self, target_context: Optional[Dict[str, Any]]) -> str:
        if not target_context:
            return "(none provided)"
        text = json.dumps(target_context, indent=2, default=str)
        if len(text) > self.MAX_CONTEXT_CHARS:
            text = text[:self.MAX_CONTEXT_CHARS] + "\n... (truncated)"
        return text

    def _corrective_block(self, corrective_context: Sequence[str]) -> str:
        if not corrective_context:
            return ""
        return CORRECTION_BLOCK.format(failures="\n".join(corrective_context))
