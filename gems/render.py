from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from gems.validators import skip_literal

_TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"

_env = Environment(
    loader=FileSystemLoader(str(_TEMPLATE_DIR)),
    autoescape=select_autoescape(["html", "xml"]),
    enable_async=False,
    keep_trailing_newline=True,
)

_SCRIPT_SRC_RE = re.compile(r'src="[^"]+\.js"')


def default_usage(element: str) -> str:
    return f"<{element}></{element}>"


def render_markup(logic_file: str, element: Optional[str], usage: Optional[str] = None, title: str = "GEMS component") -> str:
    """Markup companion: instantiates the element and loads the logic file next to it.

    A usage snippet is only kept when it actually instantiates ``element``.
    """
    if element and usage and f"<{element}" in usage:
        body = usage
    elif element:
        body = default_usage(element)
    else:
        body = ""
    tpl = _env.get_template("component.html")
    return tpl.render(title=title, usage=body, logic_file=logic_file)


def patch_markup(markup: str, logic_file: str, old_element: Optional[str] = None, new_element: Optional[str] = None) -> str:
    """Point existing markup at another logic file and, optionally, another element name."""
    out = _SCRIPT_SRC_RE.sub(f'src="./{logic_file}"', markup)
    if old_element and new_element and old_element != new_element:
        esc = re.escape(old_element)
        out = re.sub(r"<" + esc + r"(?=[\s>/])", f"<{new_element}", out)
        out = re.sub(r"</" + esc + r"\s*>", f"</{new_element}>", out)
    return out


def _strip_block_comments(code: str) -> str:
    parts = []
    i = 0
    while i < len(code):
        if code.startswith("/*", i):
            end = code.find("*/", i + 2)
            i = len(code) if end == -1 else end + 2
            continue
        if code.startswith("//", i):
            end = code.find("\n", i)
            end = len(code) if end == -1 else end
            parts.append(code[i:end])
            i = end
            continue
        nxt = skip_literal(code, i)
        if nxt != i:
            parts.append(code[i:nxt])
            i = nxt
            continue
        parts.append(code[i])
        i += 1
    return "".join(parts)


def minify_component(code: str) -> str:
    """Conservative minification: comments and indentation go, statements stay intact."""
    lines = []
    for line in _strip_block_comments(code).splitlines():
        s = line.strip()
        if not s or s.startswith("//"):
            continue
        lines.append(s)
    return "\n".join(lines)


def render_embed(code: str, element: str) -> str:
    """Paste-anywhere snippet that registers the element at most once."""
    body = minify_component(code).replace("</script", "<\\/script")
    return _env.get_template("embed.html").render(element=element, code=body)
