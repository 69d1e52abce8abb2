"""Lightweight lexical scans over generated CSS/JS.

Regex based, like the structural checks of the validator: no parser, just
enough to pull out target selectors, created elements and idempotency
markers, and to spot unbalanced delimiters.
"""

import re
from typing import FrozenSet, Iterable, List, Set, Tuple

_PSEUDO = re.compile(r"::?[a-zA-Z-]+(?:\([^)]*\))?")
_KEYFRAME_STEP = re.compile(r"^(?:from|to|\d+(?:\.\d+)?%)(?:\s*,\s*(?:from|to|\d+(?:\.\d+)?%))*$", re.IGNORECASE)
_JS_SELECTOR_CALL = re.compile(
    r"""\b(?:querySelector(?:All)?|closest|matches|waitForElement)\(\s*(['"`])((?:(?!\1).)+?)\1"""
)
_CREATED_ID_PATTERNS = [
    r"""\.id\s*=\s*['"`]([\w-]+)['"`]""",
    r"""setAttribute\(\s*['"]id['"]\s*,\s*['"]([\w-]+)['"]""",
    r"""(?<![\w.-])id\s*=\s*\\?["']([\w-]+)\\?["']""",
]
_CREATED_CLASS_PATTERNS = [
    r"""className\s*=\s*['"`]([\w\s-]+)['"`]""",
    r"""(?<![\w.-])class\s*=\s*\\?["']([\w\s-]+)\\?["']""",
]
_MARKER_PATTERNS = [
    r"""\.dataset\.([a-zA-Z_]\w*)\s*=(?!=)""",
    r"""setAttribute\(\s*['"](data-[\w-]+)['"]""",
]

PAIRS = {"(": ")", "[": "]", "{": "}"}


def strip_css_comments(css: str) -> str:
    return re.sub(r"/\*.*?\*/", " ", css or "", flags=re.DOTALL)


def strip_strings_and_comments(code: str) -> str:
    """Remove JS strings/comments to reduce false positives in regex checks."""
    code = re.sub(r"/\*.*?\*/", " ", code or "", flags=re.DOTALL)
    code = re.sub(r"(?<![:\\])//.*", " ", code)
    code = re.sub(r'"(?:\\.|[^"\\\n])*"', '""', code)
    code = re.sub(r"'(?:\\.|[^'\\\n])*'", "''", code)
    code = re.sub(r"`(?:\\.|[^`\\])*`", "``", code, flags=re.DOTALL)
    return code


def normalize_selector(selector: str) -> str:
    """Drop pseudo-classes/elements and collapse whitespace: `#cta:hover` -> `#cta`."""
    cleaned = _PSEUDO.sub("", selector or "")
    cleaned = re.sub(r"\s*([>+~])\s*", r" \1 ", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return cleaned.strip(" >+~")


def css_selectors(css: str) -> List[str]:
    """Selectors of every style rule, skipping at-rule preludes and keyframe steps."""
    selectors = []
    for match in re.finditer(r"([^{};]+)\{", strip_css_comments(css)):
        prelude = match.group(1).strip()
        if not prelude or prelude.startswith("@") or _KEYFRAME_STEP.match(prelude):
            continue
        for part in prelude.split(","):
            part = part.strip()
            if part:
                selectors.append(part)
    return selectors


def js_selectors(js: str) -> List[str]:
    selectors = []
    for match in _JS_SELECTOR_CALL.finditer(js or ""):
        selector = match.group(2).strip()
        if "${" in selector:
            continue
        selectors.extend(s.strip() for s in selector.split(",") if s.strip())
    return selectors


def extract_targets(css: str, js: str) -> FrozenSet[str]:
    """Every target identifier a piece of code references, normalized."""
    targets = set()
    for selector in css_selectors(css) + js_selectors(js):
        normalized = normalize_selector(selector)
        if normalized and normalized not in ("*", "html", "body", "html body"):
            targets.add(normalized)
    return frozenset(targets)


def created_ids(js: str) -> List[str]:
    """Element ids the code assigns itself, with repeats."""
    found = []
    for pattern in _CREATED_ID_PATTERNS:
        found.extend(re.findall(pattern, js or ""))
    return found


def created_classes(js: str) -> Set[str]:
    classes = set()
    for pattern in _CREATED_CLASS_PATTERNS:
        for group in re.findall(pattern, js or ""):
            classes.update(group.split())
    for args in re.findall(r"classList\.add\(([^)]*)\)", js or ""):
        classes.update(re.findall(r"""['"]([\w-]+)['"]""", args))
    return classes


def is_self_created(selector: str, ids: Iterable[str], classes: Iterable[str]) -> bool:
    """True when a selector names an element the code itself creates."""
    id_set, class_set = set(ids), set(classes)
    for token in re.findall(r"#([\w-]+)", selector):
        if token in id_set:
            return True
    for token in re.findall(r"\.([\w-]+)", selector):
        if token in class_set:
            return True
    return False


def idempotency_markers(js: str) -> List[str]:
    """`dataset.fooApplied = ...` / `setAttribute('data-foo-applied')` writes, as data-* names."""
    markers = []
    for name in re.findall(_MARKER_PATTERNS[0], js or ""):
        markers.append("data-" + re.sub(r"([A-Z])", lambda m: "-" + m.group(1).lower(), name))
    markers.extend(re.findall(_MARKER_PATTERNS[1], js or ""))
    return markers


def has_idempotency_guard(js: str) -> bool:
    return bool(re.search(r"dataset\.\w+|data-[\w-]+|hasAttribute\(|getElementById\(", js or ""))


def delimiter_errors(code: str, kind: str) -> List[str]:
    """Report unbalanced (), [] and {} in CSS or JS."""
    cleaned = strip_css_comments(code) if kind == "css" else strip_strings_and_comments(code)
    stack: List[Tuple[str, int]] = []
    errors = []
    closers = {v: k for k, v in PAIRS.items()}
    for line_no, line in enumerate(cleaned.splitlines(), 1):
        for char in line:
            if char in PAIRS:
                stack.append((char, line_no))
            elif char in closers:
                if not stack or stack[-1][0] != closers[char]:
                    errors.append(f"{kind.upper()} line {line_no}: unexpected '{char}'")
                    return errors
                stack.pop()
    for opener, line_no in stack:
        errors.append(f"{kind.upper()} line {line_no}: '{opener}' is never closed")
    return errors
