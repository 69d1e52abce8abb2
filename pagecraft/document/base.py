"""Contract of the live document the pipeline edits.

The page itself, element discovery and rendering belong to an external
collaborator; the pipeline only probes it, applies snapshots to it and
captures images of it.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol, Sequence, runtime_checkable

from ..session import CodeSnapshot


@dataclass
class SyntaxReport:
    valid: bool
    errors: List[str] = field(default_factory=list)


@runtime_checkable
class LiveDocument(Protocol):

    def probe_selectors(self, selectors: Sequence[str]) -> Dict[str, bool]:
        """Map each selector to whether it matches an element right now."""
        ...

    def check_syntax(self, code: str) -> SyntaxReport:
        """Compile a script without running it."""
        ...

    def apply(self, snapshot: CodeSnapshot) -> None:
        """Replace whatever overlay is showing with `snapshot` (empty clears it)."""
        ...

    def capture(self) -> bytes:
        """Screenshot of the document as it currently renders."""
        ...

    def target_context(self, request: str) -> Dict[str, Any]:
        """Resolved targets and page facts relevant to `request`."""
        ...
