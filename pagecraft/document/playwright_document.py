"""
Playwright-backed live document.

Opens the page in headless Chromium and implements the probe / apply /
capture contract. Playwright's sync API is bound to the thread that started
it, so every browser call runs on one dedicated worker thread.
"""

import concurrent.futures
from typing import Any, Dict, List, Optional, Sequence

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from ..errors import CollaboratorTimeout
from ..session import CodeSnapshot
from ..utils.progress import ProgressReporter
from .base import SyntaxReport

PROBE_SCRIPT = """(selectors) => Object.fromEntries(selectors.map((s) => {
  try { return [s, document.querySelector(s) !== null]; }
  catch (e) { return [s, false]; }
}))"""

SYNTAX_SCRIPT = """(source) => {
  try { new Function(source); return { valid: true, errors: [] }; }
  catch (e) { return { valid: false, errors: [String(e && e.message || e)] }; }
}"""

RUN_SCRIPT = """(source) => {
  try { (new Function(source))(); return null; }
  catch (e) { return String(e && e.message || e); }
}"""

CONTEXT_SCRIPT = """() => {
  const pick = (el) => ({
    tag: el.tagName.toLowerCase(),
    id: el.id || null,
    classes: Array.from(el.classList).slice(0, 4),
    text: (el.innerText || '').trim().slice(0, 60),
  });
  const interesting = 'h1, h2, h3, button, a[href], nav, header, footer, img, [role=button], form, input';
  return {
    title: document.title,
    url: location.href,
    elements: Array.from(document.querySelectorAll(interesting)).slice(0, 60).map(pick),
  };
}"""


class PlaywrightDocument(ProgressReporter):
    """A real page in headless Chromium."""

    def __init__(
        self,
        url: str,
        headless: bool = True,
        viewport: Optional[Dict[str, int]] = None,
        call_timeout: Optional[float] = 60.0,
        on_progress: Optional[callable] = None,
    ):
        self.url = url
        self.headless = headless
        self.viewport = viewport or {"width": 1280, "height": 900}
        # A wedged browser call ties up this page's worker only, never other sessions
        self.call_timeout = call_timeout
        self.on_progress = on_progress
        self.runtime_errors: List[str] = []
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="pagecraft-browser")
        self._playwright = None
        self._browser = None
        self._page = None

    def _run(self, operation, *args):
        future = self._executor.submit(operation, *args)
        try:
            return future.result(timeout=self.call_timeout)
        except concurrent.futures.TimeoutError as exc:
            future.cancel()
            raise CollaboratorTimeout(f"Browser call timed out after {self.call_timeout:g}s") from exc

    def _ensure_page(self):
        if self._page is not None:
            return self._page
        self._notify(f"👁️ [Document] Opening {self.url} in headless Chromium")
        self._playwright = sync_playwright().start()
        self._browser = self._playwright.chromium.launch(headless=self.headless)
        self._page = self._browser.new_page(viewport=self.viewport)
        self._page.on("pageerror", lambda exc: self.runtime_errors.append(str(exc)))
        self._load()
        return self._page

    def _load(self):
        self._page.goto(self.url)
        try:
            self._page.wait_for_load_state("networkidle", timeout=15000)
        except PlaywrightError:
            # Pages with long-polling never go idle; the DOM is ready anyway
            pass

    # ============ CONTRACT ============

    def probe_selectors(self, selectors: Sequence[str]) -> Dict[str, bool]:
        def _probe():
            page = self._ensure_page()
            return page.evaluate(PROBE_SCRIPT, list(selectors))
        return self._run(_probe)

    def check_syntax(self, code: str) -> SyntaxReport:
        def _check():
            page = self._ensure_page()
            return page.evaluate(SYNTAX_SCRIPT, code)
        result = self._run(_check)
        return SyntaxReport(valid=bool(result.get("valid")), errors=list(result.get("errors") or []))

    def apply(self, snapshot: CodeSnapshot) -> None:
        """Reload the page, then inject the first variation with the shared fragments.

        Script side effects cannot be undone in place, so every apply starts
        from a fresh load of the page.
        """
        def _apply():
            page = self._ensure_page()
            self.runtime_errors.clear()
            self._load()
            if snapshot.is_empty:
                return
            _, css, js = next(snapshot.bundles())
            if css.strip():
                page.add_style_tag(content=css)
            if js.strip():
                error = page.evaluate(RUN_SCRIPT, js)
                if error:
                    self.runtime_errors.append(error)
        self._run(_apply)
        if self.runtime_errors:
            self._notify(f"⚠️ [Document] {len(self.runtime_errors)} runtime error(s) after apply")

    def capture(self) -> bytes:
        def _capture():
            page = self._ensure_page()
            page.wait_for_timeout(500)
            return page.screenshot(full_page=False)
        return self._run(_capture)

    def target_context(self, request: str) -> Dict[str, Any]:
        def _context():
            page = self._ensure_page()
            return page.evaluate(CONTEXT_SCRIPT)
        context = self._run(_context)
        context["request"] = request
        return context

    def close(self) -> None:
        def _close():
            if self._browser is not None:
                self._browser.close()
            if self._playwright is not None:
                self._playwright.stop()
            self._page = self._browser = self._playwright = None
        self._run(_close)
        self._executor.shutdown(wait=False)
