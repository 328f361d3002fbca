from __future__ import annotations

import html
import logging
import os
import re
import subprocess
from typing import List, Optional, Tuple

from gems.errors import ComponentSyntaxError, StructuralError
from gems.models import AutoFixResult, StructuralMetadata, ValidationReport

log = logging.getLogger(__name__)

NODE_BIN = os.getenv("GEMS_NODE_BIN", "node")
SYNTAX_CHECK_TIMEOUT = float(os.getenv("GEMS_SYNTAX_CHECK_TIMEOUT", "10"))

# Parses stdin as a function body without running it
_NODE_CHECK = (
    "const src = require('fs').readFileSync(0, 'utf8');"
    "try { new Function(src); } catch (e) {"
    " process.stderr.write(String((e && e.message) || e)); process.exit(1); }"
)
_node_missing = False

_OPENERS = {"(": ")", "[": "]", "{": "}"}
_CLOSERS = {")": "(", "]": "[", "}": "{"}
# Tokens after which a "/" starts a regex literal rather than a division
_REGEX_AFTER_WORDS = {
    "return", "typeof", "instanceof", "in", "of", "new", "delete", "void",
    "throw", "case", "do", "else", "yield", "await",
}
_REGEX_AFTER_PUNCT = set("(,=:[!&|?{};+-*%<>~^")

_DEFINE_RE = re.compile(
    r"customElements\.define\s*\(\s*(['\"`])([^'\"`]*)\1\s*,\s*(class\b|[A-Za-z_$][\w$]*)"
)
_DEFINE_ANY_RE = re.compile(r"customElements\.define\s*\(")
_CONSTRUCTOR_RE = re.compile(r"\bconstructor\s*\(")
_SUPER_CALL_RE = re.compile(r"\bsuper\s*\(")
_EVAL_RE = re.compile(r"\beval\s*\(|\bnew\s+Function\s*\(")
_UNSCOPED_INNER_HTML_RE = re.compile(r"(?<!shadowRoot)(?<!shadow)\.innerHTML\s*=(?!=)")
_REMOTE_SCRIPT_RE = re.compile(
    r"<script[^>]*\bsrc\s*=|\bimport\s*\(\s*['\"`]https?:|\bimport\b[^;\n]*\bfrom\s*['\"]https?:",
    re.IGNORECASE,
)


class _ScanError(Exception):
    def __init__(self, message: str, line: int):
        super().__init__(f"{message} (line {line})")


class _Scanner:
    """Lexical pass over JavaScript: literals, comments, regexes and bracket balance.

    It is not a parser. Used only when node is unavailable, it still catches
    truncated code, unbalanced braces and unterminated strings.
    """

    def __init__(self, code: str):
        self.code = code
        self.i = 0
        self.line = 1
        self.stack: List[Tuple[str, int]] = []
        self.last = ""

    def _advance(self, n: int = 1) -> None:
        end = min(self.i + n, len(self.code))
        self.line += self.code.count("\n", self.i, end)
        self.i = end

    def run(self) -> None:
        code = self.code
        n = len(code)
        while self.i < n:
            ch = code[self.i]
            nxt = code[self.i + 1] if self.i + 1 < n else ""
            if ch in " \t\r\n\f\v\ufeff":
                self._advance()
            elif ch == "/" and nxt == "/":
                end = code.find("\n", self.i)
                self._advance((n if end == -1 else end) - self.i)
            elif ch == "/" and nxt == "*":
                end = code.find("*/", self.i + 2)
                if end == -1:
                    raise _ScanError("Unterminated comment", self.line)
                self._advance(end + 2 - self.i)
            elif ch in ("'", '"'):
                self._string(ch)
                self.last = "lit"
            elif ch == "`":
                self._advance()
                self._template()
            elif ch == "/":
                if self._regex_allowed():
                    self._regex()
                    self.last = "lit"
                else:
                    self._advance()
                    self.last = "/"
            elif ch in _OPENERS:
                self.stack.append((ch, self.line))
                self._advance()
                self.last = ch
            elif ch in _CLOSERS:
                self._close(ch)
            elif ch.isalpha() or ch in "_$" or ord(ch) > 127:
                start = self.i
                while self.i < n and (code[self.i].isalnum() or code[self.i] in "_$" or ord(code[self.i]) > 127):
                    self.i += 1
                self.last = code[start:self.i]
            elif ch.isdigit():
                while self.i < n and (code[self.i].isalnum() or code[self.i] in "._"):
                    self.i += 1
                self.last = "0"
            else:
                self._advance()
                self.last = ch
        if self.stack:
            opener, line = self.stack[-1]
            if opener == "${":
                raise _ScanError("Unterminated template literal", line)
            raise _ScanError(f"Unexpected end of input, '{opener}' is never closed", line)

    def _close(self, ch: str) -> None:
        if not self.stack:
            raise _ScanError(f"Unexpected token '{ch}'", self.line)
        opener, _ = self.stack[-1]
        if ch == "}" and opener == "${":
            self.stack.pop()
            self._advance()
            self._template()
            return
        if opener != _CLOSERS[ch]:
            raise _ScanError(f"Unexpected token '{ch}'", self.line)
        self.stack.pop()
        self._advance()
        self.last = ch

    def _string(self, quote: str) -> None:
        code = self.code
        start_line = self.line
        self._advance()
        while self.i < len(code):
            ch = code[self.i]
            if ch == "\\":
                self._advance(2)
                continue
            if ch == "\n":
                raise _ScanError("Unterminated string constant", start_line)
            self._advance()
            if ch == quote:
                return
        raise _ScanError("Unterminated string constant", start_line)

    def _template(self) -> None:
        """Scan template text from the current position up to the closing backtick or a ``${``."""
        code = self.code
        start_line = self.line
        while self.i < len(code):
            ch = code[self.i]
            if ch == "\\":
                self._advance(2)
                continue
            if ch == "`":
                self._advance()
                self.last = "lit"
                return
            if ch == "$" and code.startswith("${", self.i):
                self.stack.append(("${", self.line))
                self._advance(2)
                self.last = "{"
                return
            self._advance()
        raise _ScanError("Unterminated template literal", start_line)

    def _regex_allowed(self) -> bool:
        if not self.last:
            return True
        if self.last in _REGEX_AFTER_WORDS:
            return True
        return len(self.last) == 1 and self.last in _REGEX_AFTER_PUNCT

    def _regex(self) -> None:
        code = self.code
        start_line = self.line
        self._advance()
        in_class = False
        while self.i < len(code):
            ch = code[self.i]
            if ch == "\\":
                self._advance(2)
                continue
            if ch == "\n":
                break
            self._advance()
            if in_class:
                if ch == "]":
                    in_class = False
            elif ch == "[":
                in_class = True
            elif ch == "/":
                while self.i < len(code) and code[self.i].isalpha():
                    self.i += 1
                return
        raise _ScanError("Invalid regular expression: missing /", start_line)


def lexical_error(code: str) -> Optional[str]:
    """Return a description of the first lexical error in ``code``, or None."""
    try:
        _Scanner(code or "").run()
    except _ScanError as exc:
        return str(exc)
    return None


def engine_syntax_error(code: str) -> Optional[str]:
    """Parse ``code`` with node's ``new Function``; the engine's message, or None.

    Raises FileNotFoundError when node is not installed and
    subprocess.TimeoutExpired when the check hangs.
    """
    result = subprocess.run(
        [NODE_BIN, "-e", _NODE_CHECK],
        input=code or "",
        capture_output=True,
        text=True,
        timeout=SYNTAX_CHECK_TIMEOUT,
        check=False,
    )
    if result.returncode == 0:
        return None
    lines = [ln.strip() for ln in (result.stderr or result.stdout or "").splitlines() if ln.strip()]
    return lines[0][:300] if lines else f"node exited with status {result.returncode}"


def syntax_error(code: str) -> Optional[str]:
    """First syntax error in ``code``, or None.

    node is the authority; the lexical scan only stands in when node is
    missing or the check times out.
    """
    global _node_missing
    if not _node_missing:
        try:
            return engine_syntax_error(code)
        except (FileNotFoundError, PermissionError):
            _node_missing = True
            log.warning("validator node not found bin=%s; falling back to lexical scan", NODE_BIN)
        except subprocess.TimeoutExpired:
            log.warning("validator node check timed out after=%.1fs; using lexical scan", SYNTAX_CHECK_TIMEOUT)
    return lexical_error(code)


def skip_literal(code: str, i: int) -> int:
    """Index just past a string, template or comment starting at ``i``; ``i`` if none starts there."""
    ch = code[i]
    if ch == "/" and code.startswith("//", i):
        end = code.find("\n", i)
        return len(code) if end == -1 else end
    if ch == "/" and code.startswith("/*", i):
        end = code.find("*/", i + 2)
        return len(code) if end == -1 else end + 2
    if ch in ("'", '"'):
        j = i + 1
        while j < len(code) and code[j] != ch:
            j += 2 if code[j] == "\\" else 1
        return j + 1
    if ch == "`":
        j = i + 1
        while j < len(code) and code[j] != "`":
            if code[j] == "\\":
                j += 2
            elif code.startswith("${", j):
                close = _matching_brace(code, j + 1)
                j = len(code) if close == -1 else close + 1
            else:
                j += 1
        return j + 1
    return i


def skip_regex(code: str, i: int) -> int:
    """Index just past a regex literal starting at ``i``; ``i`` if the ``/`` there is not one."""
    if code[i] != "/" or code.startswith(("//", "/*"), i):
        return i
    j = i - 1
    while j >= 0 and code[j] in " \t\r\n":
        j -= 1
    if j >= 0:
        prev = code[j]
        if prev.isalnum() or prev in "_$":
            start = j
            while start > 0 and (code[start - 1].isalnum() or code[start - 1] in "_$"):
                start -= 1
            if code[start:j + 1] not in _REGEX_AFTER_WORDS:
                return i
        elif prev not in _REGEX_AFTER_PUNCT:
            return i
    k = i + 1
    in_class = False
    while k < len(code):
        ch = code[k]
        if ch == "\\":
            k += 2
            continue
        if ch == "\n":
            return i
        k += 1
        if in_class:
            if ch == "]":
                in_class = False
        elif ch == "[":
            in_class = True
        elif ch == "/":
            while k < len(code) and code[k].isalpha():
                k += 1
            return k
    return i


def _matching_brace(code: str, open_idx: int) -> int:
    depth = 0
    i = open_idx
    while i < len(code):
        skipped = skip_literal(code, i)
        if skipped != i:
            i = skipped
            continue
        ch = code[i]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return -1


def _strip_comments(code: str) -> str:
    return re.sub(r"//[^\n]*|/\*.*?\*/", "", code, flags=re.DOTALL)


def _find_define(code: str) -> Optional[re.Match]:
    return _DEFINE_RE.search(code)


def _find_class(code: str, unit: Optional[str], define_at: int) -> Optional[Tuple[Optional[str], int]]:
    """Locate the declaration of the registered class: (extends clause, index of its body brace)."""
    if unit is None:
        # Inline class expression passed straight to define()
        pattern = re.compile(r"class\b\s*(?:[A-Za-z_$][\w$]*)?\s*(?:extends\s+([^{]*?))?\s*\{")
        m = pattern.search(code, define_at)
    else:
        pattern = re.compile(r"\bclass\s+" + re.escape(unit) + r"\s*(?:extends\s+([^{]*?))?\s*\{")
        m = pattern.search(code)
    if not m:
        return None
    extends = (m.group(1) or "").strip() or None
    return extends, m.end() - 1


def _constructor_span(code: str, body_open: int) -> Optional[Tuple[int, int]]:
    """(open, close) brace indices of the constructor body inside a class body."""
    body_close = _matching_brace(code, body_open)
    if body_close == -1:
        return None
    i = body_open + 1
    depth = 0
    while i < body_close:
        skipped = skip_literal(code, i)
        if skipped != i:
            i = skipped
            continue
        ch = code[i]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
        elif depth == 0:
            m = _CONSTRUCTOR_RE.match(code, i)
            if m and (i == 0 or not (code[i - 1].isalnum() or code[i - 1] in "_$.")):
                open_idx = code.find("{", m.end())
                if open_idx == -1:
                    return None
                close_idx = _matching_brace(code, open_idx)
                if close_idx == -1:
                    return None
                return open_idx, close_idx
        i += 1
    return None


def _structural_checks(code: str) -> Tuple[List[str], StructuralMetadata]:
    errors: List[str] = []
    meta = StructuralMetadata(
        has_shadow_boundary="attachShadow" in code,
        has_lifecycle_hook="connectedCallback" in code,
    )
    define = _find_define(code)
    if define is None:
        if _DEFINE_ANY_RE.search(code):
            errors.append("customElements.define() must register a string literal name with a class")
        else:
            errors.append("Missing customElements.define() registration")
        return errors, meta

    name = define.group(2)
    unit = None if define.group(3) == "class" else define.group(3)
    meta.registered_name = name
    meta.declared_unit_name = unit
    if "-" not in name:
        errors.append(f'Custom element name "{name}" must contain a hyphen')

    found = _find_class(code, unit, define.start())
    if found is None:
        errors.append(f"Class {unit or '(inline)'} is not declared")
        return errors, meta
    extends, body_open = found
    if extends != "HTMLElement":
        errors.append(f"Class {unit or '(inline)'} must extend HTMLElement")

    span = _constructor_span(code, body_open)
    if span is not None:
        meta.has_initializer = True
        ctor_body = _strip_comments(code[span[0] + 1: span[1]]).strip()
        if not _SUPER_CALL_RE.search(ctor_body):
            errors.append("Constructor must call super() before anything else")
        elif not re.match(r"super\s*\(", ctor_body):
            errors.append("super() must be the first statement in the constructor")
    return errors, meta


def _warnings(code: str) -> List[str]:
    warnings: List[str] = []
    if "attachShadow" not in code:
        warnings.append("Component does not use Shadow DOM (attachShadow)")
    if "connectedCallback" not in code:
        warnings.append("Component does not implement connectedCallback")
    if _EVAL_RE.search(code):
        warnings.append("Avoid eval() and new Function(); they break CSP and are unsafe")
    if _UNSCOPED_INNER_HTML_RE.search(code):
        warnings.append("innerHTML is assigned outside the shadow root")
    if _REMOTE_SCRIPT_RE.search(code):
        warnings.append("Component loads remote scripts")
    return warnings


def validate(code: str) -> ValidationReport:
    err = syntax_error(code)
    if err is not None:
        return ValidationReport(is_valid=False, errors=[f"JavaScript syntax error: {err}"])
    errors, meta = _structural_checks(code)
    return ValidationReport(
        is_valid=not errors,
        errors=errors,
        warnings=_warnings(code),
        metadata=meta,
    )


def ensure_valid(code: str) -> ValidationReport:
    """Like ``validate`` but raises for callers that want strict handling."""
    report = validate(code)
    if report.is_valid:
        return report
    if report.metadata is None:
        raise ComponentSyntaxError(report.errors[0], report)
    raise StructuralError("; ".join(report.errors), report)


def _fix_registered_name(code: str, changes: List[str]) -> str:
    define = _find_define(code)
    if define is None:
        return code
    name = define.group(2)
    if not name or "-" in name:
        return code
    new_name = f"{name.lower()}-component"
    pattern = re.compile(r"(['\"`])" + re.escape(name) + r"\1")
    code = pattern.sub(lambda m: f"{m.group(1)}{new_name}{m.group(1)}", code)
    changes.append(f'Renamed element "{name}" to "{new_name}"')
    return code


def _fix_missing_super(code: str, changes: List[str]) -> str:
    define = _find_define(code)
    if define is None:
        return code
    unit = None if define.group(3) == "class" else define.group(3)
    found = _find_class(code, unit, define.start())
    if found is None:
        return code
    span = _constructor_span(code, found[1])
    if span is None:
        return code
    open_idx, close_idx = span
    body = code[open_idx + 1: close_idx]
    if _SUPER_CALL_RE.search(_strip_comments(body)):
        return code
    line_start = code.rfind("\n", 0, open_idx) + 1
    outer = re.match(r"[ \t]*", code[line_start:]).group(0)
    m = re.search(r"\n([ \t]*)\S", body)
    indent = m.group(1) if m else outer + "  "
    code = code[: open_idx + 1] + f"\n{indent}super();" + code[open_idx + 1:]
    changes.append("Inserted missing super() call in constructor")
    return code


def attempt_auto_fix(code: str) -> AutoFixResult:
    """Mechanical repairs only: a missing super() and a registration name without a hyphen.

    Running it on its own output changes nothing.
    """
    changes: List[str] = []
    fixed = _fix_missing_super(code, changes)
    fixed = _fix_registered_name(fixed, changes)
    if changes:
        log.info("autofix applied changes=%d", len(changes))
    return AutoFixResult(fixed=bool(changes), code=fixed, changes=changes)


def _slug(category: str) -> str:
    s = re.sub(r"[^a-z0-9]+", "-", (category or "").lower()).strip("-")
    if not s:
        return "gem"
    if not s[0].isalpha():
        s = f"gem-{s}"
    return s


def _class_name(slug: str) -> str:
    return "".join(part[:1].upper() + part[1:] for part in slug.split("-") if part)


def _template_text(value: str) -> str:
    """Escape ``value`` for HTML and then for a JS template literal."""
    escaped = html.escape(value, quote=True).replace("\r", " ").replace("\n", " ")
    return escaped.replace("\\", "\\\\").replace("`", "\\`").replace("$", "\\$")


def create_error_component(category: str, errors: List[str], brand: Optional[str] = None) -> str:
    """An always-valid stand-in component that lists why generation failed."""
    slug = _slug(category)
    name = f"{slug}-error"
    cls = f"{_class_name(slug)}Error"
    title = f"{brand} {category}" if brand else category
    items = "\n".join(f"          <li>{_template_text(e)}</li>" for e in (errors or ["Unknown error"]))
    return f"""class {cls} extends HTMLElement {{
  constructor() {{
    super();
    this.attachShadow({{ mode: 'open' }});
  }}

  connectedCallback() {{
    this.render();
  }}

  render() {{
    this.shadowRoot.innerHTML = `
      <style>
        :host {{ display: block; font-family: system-ui, sans-serif; }}
        .gem-error {{ border: 1px solid #e5484d; background: #fff5f5; color: #7a1a1d; padding: 1rem 1.25rem; border-radius: 8px; }}
        .gem-error h3 {{ margin: 0 0 0.5rem; font-size: 1rem; }}
        .gem-error ul {{ margin: 0; padding-left: 1.25rem; }}
      </style>
      <div class="gem-error" role="alert">
        <h3>Could not generate {_template_text(title)} component</h3>
        <ul>
{items}
        </ul>
      </div>
    `;
  }}
}}

customElements.define('{name}', {cls});
"""


def default_component(category: str, brand: Optional[str] = None) -> str:
    """Placeholder component for a category; also what the template tier serves."""
    slug = _slug(category)
    name = f"{slug}-component"
    cls = f"{_class_name(slug)}Component"
    heading = _template_text(f"{brand} {category}".strip() if brand else category or "Component")
    return f"""class {cls} extends HTMLElement {{
  static get observedAttributes() {{
    return ['heading', 'text'];
  }}

  constructor() {{
    super();
    this.attachShadow({{ mode: 'open' }});
  }}

  connectedCallback() {{
    this.render();
  }}

  attributeChangedCallback() {{
    this.render();
  }}

  render() {{
    const heading = this.getAttribute('heading') || '{heading}';
    const text = this.getAttribute('text') || '';
    this.shadowRoot.innerHTML = `
      <style>
        :host {{ display: block; font-family: system-ui, sans-serif; }}
        section {{ padding: 2rem; border-radius: 12px; background: #f6f7f9; }}
        h2 {{ margin: 0 0 0.5rem; }}
      </style>
      <section>
        <h2>${{heading}}</h2>
        <p>${{text}}</p>
        <slot></slot>
      </section>
    `;
  }}
}}

customElements.define('{name}', {cls});
"""
