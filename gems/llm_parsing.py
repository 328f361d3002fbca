from __future__ import annotations

import logging
import re
from typing import Callable, List, Optional, Tuple

from gems.models import Extraction
from gems.validators import skip_literal, skip_regex

log = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:[ \t]*([\w+#.-]*)[ \t]*\r?\n)?(.*?)```", re.DOTALL)
_SCRIPT_RE = re.compile(r"<script([^>]*)>(.*?)</script\s*>", re.IGNORECASE | re.DOTALL)
_DECLARATION_SPAN_RE = re.compile(
    r"class\s+[A-Za-z_$][\w$]*\s+extends\s+HTMLElement[\s\S]*?customElements\.define\s*\([^)]*\)\s*;?"
)
_DECLARATION_START_RE = re.compile(
    r"class\s+[A-Za-z_$][\w$]*\s+extends\b|customElements\.define\s*\("
)
_DEFINE_CALL_RE = re.compile(r"customElements\.define\s*\(")
_FENCE_LINE_RE = re.compile(r"^[ \t]*```[\w+#.-]*[ \t]*$\n?", re.MULTILINE)
_STOCK_PREAMBLE_RE = re.compile(
    r"\A\s*(?:sure[,!.]?\s*)?(?:here(?:'|’)?s|here\s+is|below\s+is|this\s+is)\b[^\n]*?:[ \t]*(?:\n|\Z)",
    re.IGNORECASE,
)
_DOCUMENT_MARKER_RE = re.compile(r"<!doctype\b|<html\b|<body\b", re.IGNORECASE)
_USAGE_MARKER_RE = re.compile(r"<!--\s*usage(?:\s+example)?\s*-->", re.IGNORECASE)
_CUSTOM_TAG_RE = re.compile(
    r"<([a-z][a-z0-9]*-[a-z0-9-]*)\b[^>]*>(?:.*?</\1\s*>)?", re.IGNORECASE | re.DOTALL
)
_CODE_LINE_RE = re.compile(
    r"""^\s*(?:import\b|export\b|const\b|let\b|var\b|function\b|class\b|async\b|
    if\b|for\b|return\b|this\.|window\.|document\.|customElements\.|
    //|/\*|\*/|\}|\)|\]|@|['"]use\ strict['"])""",
    re.VERBOSE,
)


def _looks_like_code(line: str) -> bool:
    s = line.strip()
    if not s:
        return True
    if _CODE_LINE_RE.match(s):
        return True
    return s.endswith((";", "{", "}", "=>"))


def _first_fence(raw: str) -> Optional[str]:
    m = _FENCE_RE.search(raw)
    if not m:
        return None
    return m.group(2)


def _is_document(candidate: str) -> bool:
    """Markup that embeds its logic, as opposed to JS that merely mentions a <script> tag."""
    if _DECLARATION_START_RE.search(_SCRIPT_RE.sub("", candidate)):
        return False
    return candidate.lstrip().startswith("<") or bool(_DOCUMENT_MARKER_RE.search(candidate))


def _inline_script(candidate: str) -> Optional[Tuple[str, str]]:
    """Return (script body, remaining markup) for documents that inline their logic."""
    if not _is_document(candidate):
        return None
    bodies = []
    for m in _SCRIPT_RE.finditer(candidate):
        attrs, body = m.group(1) or "", m.group(2) or ""
        if "src=" in attrs.lower() or not body.strip():
            continue
        bodies.append((m, body))
    if not bodies:
        return None
    # Prefer the script that registers the element
    chosen = next(((m, b) for m, b in bodies if "customElements.define" in b), bodies[0])
    m, body = chosen
    remainder = candidate[: m.start()] + candidate[m.end():]
    return body, remainder


def _usage_markup(remainder: str) -> Optional[str]:
    marker = _USAGE_MARKER_RE.search(remainder)
    if marker:
        m = _CUSTOM_TAG_RE.search(remainder, marker.end())
        if m:
            return m.group(0).strip()
    m = _CUSTOM_TAG_RE.search(remainder)
    if m:
        return m.group(0).strip()
    return None


def _define_call_end(text: str, start: int) -> int:
    """Index just past the registration call that starts at ``start`` (and its ``;``), or -1."""
    open_idx = text.find("(", start)
    if open_idx == -1:
        return -1
    depth = 0
    i = open_idx
    while i < len(text):
        skipped = skip_literal(text, i)
        if skipped == i:
            skipped = skip_regex(text, i)
        if skipped != i:
            i = skipped
            continue
        ch = text[i]
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                end = i + 1
                rest = text[end:]
                stripped = rest.lstrip(" \t")
                if stripped.startswith(";"):
                    end += len(rest) - len(stripped) + 1
                return end
        i += 1
    return -1


# --- cleanup pipeline: each step is a pure str -> str ---

def strip_leading_prose(code: str) -> str:
    m = _DECLARATION_START_RE.search(code)
    if not m:
        return code
    prefix = code[: m.start()]
    if not prefix.strip():
        return code
    lines = prefix.splitlines(keepends=True)
    # Keep everything from the first line that reads like code
    for idx, line in enumerate(lines):
        if line.strip() and _looks_like_code(line):
            return "".join(lines[idx:]) + code[m.start():]
    return code[m.start():]


def strip_trailing_prose(code: str) -> str:
    calls = list(_DEFINE_CALL_RE.finditer(code))
    if not calls:
        return code
    end = _define_call_end(code, calls[-1].start())
    if end == -1:
        return code
    tail = code[end:]
    if not tail.strip():
        return code
    kept: List[str] = []
    for line in tail.splitlines(keepends=True):
        if line.strip() and not _looks_like_code(line):
            break
        kept.append(line)
    return code[:end] + "".join(kept)


def strip_fence_residue(code: str) -> str:
    out = _FENCE_LINE_RE.sub("", code)
    return out.replace("```", "")


def strip_stock_preamble(code: str) -> str:
    return _STOCK_PREAMBLE_RE.sub("", code, count=1)


def trim(code: str) -> str:
    return code.strip()


CLEANUP_STEPS: List[Callable[[str], str]] = [
    strip_leading_prose,
    strip_trailing_prose,
    strip_fence_residue,
    strip_stock_preamble,
    trim,
]


def cleanup(code: str) -> str:
    for step in CLEANUP_STEPS:
        code = step(code)
    return code


def extract(raw: str) -> Extraction:
    """Pull one code candidate out of a model response.

    Rules, first match wins:
    - the first fenced block;
    - if that block is a document with an inline <script>, the script body
      (plus a usage tag found in the rest of the document);
    - a ``class X extends HTMLElement ... customElements.define(...)`` span;
    - the whole text.
    The candidate is then run through ``CLEANUP_STEPS``. Never raises.
    """
    text = raw if isinstance(raw, str) else ""
    usage: Optional[str] = None
    fenced = _first_fence(text)
    if fenced is not None:
        rule = "fence"
        candidate = fenced
        inline = _inline_script(candidate)
        if inline is not None:
            rule = "inline-script"
            candidate, remainder = inline
            usage = _usage_markup(remainder)
    else:
        m = _DECLARATION_SPAN_RE.search(text)
        if m:
            rule = "declaration"
            candidate = m.group(0)
        else:
            rule = "whole-text"
            candidate = text
    code = cleanup(candidate)
    log.debug("extract rule=%s chars=%d", rule, len(code))
    return Extraction(code=code, usage_markup=usage, rule=rule)


def extract_code(raw: str) -> str:
    return extract(raw).code
