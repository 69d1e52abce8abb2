"""
Prompt templates for the page-editing agents.
Literal braces are doubled: these go through ChatPromptTemplate.from_template.
"""

# ============ INTENT CLASSIFICATION ============

INTENT_CLASSIFIER_PROMPT = """You classify how a new page-editing request relates to the code already applied to the page.

## NEW REQUEST:
"{request}"

## CODE ALREADY APPLIED: {has_prior_code}
Targets currently changed by that code:
{current_targets}

## EARLIER REQUESTS (oldest first, with the targets each one introduced):
{prior_requests}

## INTENT TYPES:
1. REFINEMENT - modifies the effect of the existing code on the SAME targets
   ("make it darker", "bigger", "change that color to blue", "move it a bit left").
   Pronouns like "it", "that", "this" usually point at the most recent change.
2. NEW_FEATURE - adds a change to different, unrelated elements
   ("also add a banner at the top", "now change the headline").
3. FULL_REWRITE - ONLY when the user explicitly discards earlier work
   ("start over", "forget all that", "scrap everything and ...").
   Never choose this just because the request is unclear.
4. AMBIGUOUS - you cannot tell which of several earlier changes is meant
   ("change it" when two unrelated elements were changed).

## OUTPUT FORMAT (JSON ONLY, no markdown):
{{
  "type": "REFINEMENT" | "NEW_FEATURE" | "FULL_REWRITE" | "AMBIGUOUS",
  "confidence": 0-100,
  "reasoning": "one sentence",
  "candidates": [
    {{"label": "short option", "description": "one-line meaning"}}
  ]
}}
Only fill "candidates" when type is AMBIGUOUS (at least two options).

/no_think
"""

# ============ CODE GENERATION ============

CODE_GENERATION_PROMPT = """You write style/behavior overlay code that edits a live web page.
The code is injected into the page as one CSS block and one JavaScript block per variation.

## USER REQUEST:
"{request}"

## STRATEGY: {strategy}
{strategy_rules}

{prior_code_block}

## CONVERSATION SO FAR:
{history}

## PAGE CONTEXT (resolved targets and page facts):
{target_context}
{corrective_block}
## CODING RULES:
1. Only use selectors that exist on the page (or elements your own code creates).
2. CSS must be complete rules with balanced braces; use !important where page styles may win.
3. JavaScript must be idempotent: guard every mutation with a data-* marker
   (e.g. `if (el.dataset.pcApplied) return; el.dataset.pcApplied = '1';`).
4. Never create the same element id twice; check `document.getElementById` first.
5. No placeholders, no TODOs, no explanations.

## OUTPUT FORMAT (valid JSON only, no markdown, no commentary):
{{
  "variations": [
    {{
      "number": 1,
      "name": "Variation 1",
      "css": "/* CSS code */",
      "js": "/* JavaScript code */"
    }}
  ],
  "globalCSS": "",
  "globalJS": "",
  "confidence": 0-100
}}

/no_think
"""

REFINEMENT_RULES = """CRITICAL RULES FOR REFINEMENT:
1. The EXISTING CODE below is the starting point: preserve it unless the request directly contradicts it.
2. Use the SAME selectors already in the existing code; only change what the user asked for.
3. NEVER drop any of these targets unless the request explicitly asks to remove them:
{preserved_targets}
4. Return the COMPLETE updated code (existing + modified), not a diff."""

NEW_FEATURE_RULES = """CRITICAL RULES FOR NEW FEATURE:
1. Add the new change alongside the existing code; the existing code below is do-not-break context.
2. Keep every existing rule and script working and return them together with the new code.
3. Pick selectors for the new elements from the page context."""

FULL_REWRITE_RULES = """CRITICAL RULES FOR FULL REWRITE:
1. The user discarded all earlier changes. Start from the unmodified page.
2. Do not carry over earlier selectors unless the new request needs them."""

PRIOR_CODE_BLOCK = """## EXISTING CODE ({label}):
{code}"""

CORRECTION_BLOCK = """
## YOUR PREVIOUS ATTEMPTS FAILED VALIDATION (fix ALL of these):
{failures}
"""

# ============ VISUAL REVIEW ============

VISUAL_REVIEW_PROMPT = """You are a visual QA reviewer for on-page edits.
Image 1 is the page BEFORE the change, image 2 is AFTER.

## USER REQUEST:
"{request}"

## CODE THAT WAS APPLIED:
{code}

## CHECK:
1. Was the user's goal accomplished on the correct element?
2. Did the change break anything? Look for:
   CRITICAL: text-unreadable, layout-broken, element-missing, element-overlapping, element-duplicated
   MAJOR: text-misaligned, bad-spacing, poor-contrast, visual-hierarchy-broken, color-disharmony
3. For each defect give ONE concrete CSS/JS fix for the overlay code.
   Never suggest offsetting navigation, header or menu elements.

## OUTPUT FORMAT (JSON ONLY, no markdown):
{{
  "status": "PASS" | "GOAL_NOT_MET" | "CRITICAL_DEFECT" | "MAJOR_DEFECT",
  "goalAccomplished": true | false,
  "defects": [
    {{
      "severity": "critical" | "major",
      "type": "category from the list above",
      "description": "what is wrong and where",
      "suggestedFix": "specific code change"
    }}
  ],
  "reasoning": "short explanation"
}}

/no_think
"""
