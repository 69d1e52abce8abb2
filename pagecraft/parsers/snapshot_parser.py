"""Snapshot Parser - turns a generation reply into a validated CodeSnapshot shape."""

import json
import re
from typing import Any, Dict, List, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import GenerationFailed
from ..session import CodeSnapshot, Variation
from .code_scanner import extract_targets


class VariationModel(BaseModel):
    """One variation as the generator returns it."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    number: int = 0
    name: str = ""
    css: str = ""
    js: str = ""

    @field_validator("name", "css", "js", mode="before")
    @classmethod
    def _coerce_text(cls, value):
        if value is None:
            return ""
        if isinstance(value, list):
            return "\n".join(str(v) for v in value)
        return str(value)

    @field_validator("number", mode="before")
    @classmethod
    def _coerce_number(cls, value):
        try:
            return int(value)
        except (TypeError, ValueError):
            return 0


class GeneratedReply(BaseModel):
    """Strict schema of a generation reply. Missing fields are synthesized empty."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    variations: List[VariationModel] = Field(
        default_factory=list, validation_alias=AliasChoices("variations", "variants")
    )
    global_css: str = Field("", validation_alias=AliasChoices("globalCSS", "global_css"))
    global_js: str = Field("", validation_alias=AliasChoices("globalJS", "global_js"))
    shared_fragments: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("sharedFragments", "shared_fragments")
    )
    confidence: Optional[float] = None

    @field_validator("global_css", "global_js", mode="before")
    @classmethod
    def _coerce_text(cls, value):
        return "" if value is None else str(value)

    @field_validator("variations", "shared_fragments", mode="before")
    @classmethod
    def _coerce_empty(cls, value, info):
        if value is None:
            return [] if info.field_name == "variations" else {}
        return value

    @property
    def has_code(self) -> bool:
        snapshot = self.to_snapshot()
        return not snapshot.is_empty

    def to_snapshot(self) -> CodeSnapshot:
        variations = []
        for idx, variation in enumerate(self.variations, 1):
            if not (variation.css.strip() or variation.js.strip()):
                continue
            number = variation.number or idx
            variations.append(Variation(
                number=number,
                name=variation.name or f"Variation {number}",
                css=variation.css,
                js=variation.js,
            ))

        global_css = self.global_css
        global_js = self.global_js
        shared_css = str(self.shared_fragments.get("css") or self.shared_fragments.get("globalCSS") or "")
        shared_js = str(self.shared_fragments.get("js") or self.shared_fragments.get("globalJS") or "")
        if shared_css and shared_css not in global_css:
            global_css = "\n".join(p for p in (global_css, shared_css) if p)
        if shared_js and shared_js not in global_js:
            global_js = "\n".join(p for p in (global_js, shared_js) if p)

        all_css = "\n".join([v.css for v in variations] + [global_css])
        all_js = "\n".join([v.js for v in variations] + [global_js])
        return CodeSnapshot(
            variations=tuple(variations),
            global_css=global_css,
            global_js=global_js,
            targets=extract_targets(all_css, all_js),
        )


class ReplyMetadata(BaseModel):
    """Facts about the last parsed reply."""
    repaired: bool = Field(default=False, description="Structural repair was needed")
    variation_count: int = 0
    has_css: bool = False
    has_js: bool = False
    confidence: Optional[float] = None


class SnapshotParser:
    """
    Parser for generation replies.

    Order of attempts:
    1) Strip reasoning blocks and markdown fences, cut to the outermost JSON object
    2) Strict json.loads
    3) Structural repair (trailing commas, raw newlines in strings,
       unterminated string, unbalanced braces/brackets) and a second parse
    """

    def __init__(self):
        self.metadata = ReplyMetadata()

    def parse(self, llm_output: str) -> GeneratedReply:
        text = self._strip_thinking_tokens(str(llm_output or ""))
        text = self._strip_fences(text)
        candidate = self._cut_to_object(text)
        if candidate is None:
            raise GenerationFailed("Reply contained no JSON object")

        data, repaired = self._load(candidate)
        data = self._normalize_shape(data)

        try:
            reply = GeneratedReply.model_validate(data)
        except ValidationError as e:
            raise GenerationFailed(f"Reply does not match the code schema: {e.error_count()} error(s)") from e

        snapshot = reply.to_snapshot()
        if snapshot.is_empty:
            raise GenerationFailed("Reply contained no CSS or JavaScript")

        self.metadata = ReplyMetadata(
            repaired=repaired,
            variation_count=len(snapshot.variations),
            has_css=bool(snapshot.css.strip()),
            has_js=bool(snapshot.js.strip()),
            confidence=reply.confidence,
        )
        return reply

    def get_metadata(self) -> ReplyMetadata:
        return self.metadata

    # ============ EXTRACTION ============

    def _strip_thinking_tokens(self, text: str) -> str:
        clean = re.sub(r"<(?:thinking|think)>.*?</(?:thinking|think)>", "", text, flags=re.DOTALL | re.IGNORECASE)
        # An unclosed think block (truncated reply) hides everything after it
        clean = re.sub(r"<(?:thinking|think)>(?:(?!\{).)*", "", clean, flags=re.DOTALL | re.IGNORECASE)
        return clean.strip()

    def _strip_fences(self, text: str) -> str:
        fenced = re.search(r"```(?:json|javascript|js)?\s*\n(.*?)(?:```|$)", text, flags=re.DOTALL | re.IGNORECASE)
        if fenced and "{" in fenced.group(1):
            return fenced.group(1).strip()
        return text

    def _cut_to_object(self, text: str) -> Optional[str]:
        start = text.find("{")
        if start == -1:
            return None
        end = text.rfind("}")
        if end > start:
            tail = text[end + 1:].strip()
            # Trailing prose after a complete object is dropped; anything else
            # may be a truncated object and is kept for repair.
            if not tail or not re.search(r"[\"\[{:,]", tail):
                return text[start:end + 1]
        return text[start:]

    def _load(self, text: str) -> Tuple[Any, bool]:
        try:
            return json.loads(text), False
        except json.JSONDecodeError:
            pass
        repaired = self.repair(text)
        try:
            return json.loads(repaired), True
        except json.JSONDecodeError as e:
            raise GenerationFailed(f"Reply is not valid JSON even after repair: {e.msg} at char {e.pos}") from e

    def _normalize_shape(self, data: Any) -> Dict[str, Any]:
        if isinstance(data, list):
            return {"variations": data}
        if not isinstance(data, dict):
            raise GenerationFailed(f"Reply JSON is a {type(data).__name__}, expected an object")
        keys = set(data)
        if not keys & {"variations", "variants", "globalCSS", "globalJS", "global_css", "global_js",
                       "sharedFragments", "shared_fragments"}:
            if keys & {"css", "js"}:
                # A single bare variation
                return {"variations": [data]}
        return data

    # ============ REPAIR ============

    def repair(self, text: str) -> str:
        """Best-effort structural repair of a malformed or truncated JSON object."""
        text = text.strip()

        out: List[str] = []
        stack: List[str] = []
        in_string = False
        escaped = False
        closers = {"{": "}", "[": "]"}

        for char in text:
            if in_string:
                if escaped:
                    escaped = False
                    out.append(char)
                elif char == "\\":
                    escaped = True
                    out.append(char)
                elif char == '"':
                    in_string = False
                    out.append(char)
                elif char == "\n":
                    out.append("\\n")
                elif char == "\r":
                    continue
                elif char == "\t":
                    out.append("\\t")
                else:
                    out.append(char)
                continue

            if char == '"':
                in_string = True
                out.append(char)
            elif char in closers:
                stack.append(closers[char])
                out.append(char)
            elif char in "}]":
                if stack and stack[-1] == char:
                    stack.pop()
                    self._drop_trailing_comma(out)
                    out.append(char)
                # An unmatched closer is dropped
            else:
                out.append(char)

        if escaped:
            out.pop()
        if in_string:
            out.append('"')

        repaired = "".join(out).rstrip()
        # Drop a dangling key or separator left by truncation
        repaired = re.sub(r',?\s*"[^"]*"\s*:\s*$', "", repaired)
        repaired = re.sub(r"[,:]\s*$", "", repaired)
        repaired += "".join(reversed(stack))
        return repaired

    @staticmethod
    def _drop_trailing_comma(out: List[str]) -> None:
        """Remove a comma that directly precedes a closer, ignoring whitespace."""
        i = len(out) - 1
        while i >= 0 and out[i].isspace():
            i -= 1
        if i >= 0 and out[i] == ",":
            del out[i]
