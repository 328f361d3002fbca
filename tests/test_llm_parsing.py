from gems import llm_parsing
from gems.llm_parsing import (
    CLEANUP_STEPS,
    extract,
    extract_code,
    strip_fence_residue,
    strip_leading_prose,
    strip_stock_preamble,
    strip_trailing_prose,
)


COMPONENT = (
    "class HeroBanner extends HTMLElement {\n"
    "  constructor() {\n"
    "    super();\n"
    "  }\n"
    "}\n"
    "customElements.define('hero-banner', HeroBanner);"
)


def test_fenced_block_wrapped_in_prose():
    raw = (
        "Sure! Here's your component:\n\n```javascript\n"
        + COMPONENT
        + "\n```\n\nLet me know if you need changes."
    )
    out = extract(raw)
    assert out.rule == "fence"
    assert out.code == COMPONENT
    assert out.usage_markup is None


def test_only_first_fence_is_used():
    raw = "```js\n" + COMPONENT + "\n```\nAnd a test:\n```js\nconsole.log('second');\n```"
    code = extract_code(raw)
    assert code == COMPONENT
    assert "second" not in code


def test_prose_inside_fence_is_dropped():
    raw = "```\nHere's the component:\n" + COMPONENT + "\n```"
    assert extract_code(raw) == COMPONENT


def test_inline_script_document_yields_script_and_usage():
    raw = (
        "```html\n<!DOCTYPE html>\n<html><body>\n"
        "<!-- Usage example -->\n"
        '<price-card plan="pro"></price-card>\n'
        "<script>\n"
        "class PriceCard extends HTMLElement {\n"
        "  connectedCallback() { this.textContent = 'Pro'; }\n"
        "}\n"
        "customElements.define('price-card', PriceCard);\n"
        "</script>\n</body></html>\n```"
    )
    out = extract(raw)
    assert out.rule == "inline-script"
    assert out.code.startswith("class PriceCard extends HTMLElement")
    assert out.code.endswith("customElements.define('price-card', PriceCard);")
    assert "<script>" not in out.code
    assert out.usage_markup == '<price-card plan="pro"></price-card>'


def test_unfenced_declaration_span():
    raw = (
        "I made this for you. class FaqList extends HTMLElement { connectedCallback() {} } "
        "customElements.define('faq-list', FaqList); Hope it helps!"
    )
    out = extract(raw)
    assert out.rule == "declaration"
    assert out.code == (
        "class FaqList extends HTMLElement { connectedCallback() {} } "
        "customElements.define('faq-list', FaqList);"
    )


def test_whole_text_when_nothing_matches():
    out = extract("No code here.")
    assert out.rule == "whole-text"
    assert out.code == "No code here."


def test_extract_never_raises_on_garbage():
    assert extract(None).code == ""  # type: ignore[arg-type]
    assert extract("```").code == ""
    assert extract("```javascript\nclass Broken extends").code == "class Broken extends"


def test_strip_leading_prose_drops_sentences():
    code = "Here is the code you asked for:\nclass A extends HTMLElement {}\n"
    assert strip_leading_prose(code) == "class A extends HTMLElement {}\n"


def test_strip_leading_prose_keeps_imports_and_setup():
    code = "import { css } from './styles.js';\nconst template = document.createElement('template');\nclass A extends HTMLElement {}"
    assert strip_leading_prose(code) == code


def test_strip_trailing_prose():
    out = strip_trailing_prose("customElements.define('a-b', A);\n\nThis registers the element.")
    assert out.rstrip() == "customElements.define('a-b', A);"


def test_strip_trailing_prose_keeps_comments():
    code = "customElements.define('a-b', A);\n// usage: <a-b></a-b>"
    assert strip_trailing_prose(code) == code


def test_strip_fence_residue_and_preamble():
    assert strip_fence_residue("```js\nconst x = 1;\n```").strip() == "const x = 1;"
    assert strip_stock_preamble("Here's the code:\nconst x = 1;") == "const x = 1;"


def test_cleanup_order_is_fixed():
    assert CLEANUP_STEPS == [
        llm_parsing.strip_leading_prose,
        llm_parsing.strip_trailing_prose,
        llm_parsing.strip_fence_residue,
        llm_parsing.strip_stock_preamble,
        llm_parsing.trim,
    ]


def test_script_tag_inside_a_string_is_not_a_document():
    component = (
        "class LogBox extends HTMLElement {\n"
        "  connectedCallback() {\n"
        "    this.textContent = '<script>console.log(1)</script>';\n"
        "  }\n"
        "}\n"
        "customElements.define('log-box', LogBox);"
    )
    out = extract("```js\n" + component + "\n```")
    assert out.rule == "fence"
    assert out.code == component
    assert out.usage_markup is None


def test_markup_without_document_wrapper_still_yields_its_script():
    raw = (
        "```html\n<log-box></log-box>\n<script>\n"
        "customElements.define('log-box', class extends HTMLElement {});\n"
        "</script>\n```"
    )
    out = extract(raw)
    assert out.rule == "inline-script"
    assert out.code == "customElements.define('log-box', class extends HTMLElement {});"
    assert out.usage_markup == "<log-box></log-box>"


def test_trailing_prose_after_define_with_regex_and_comment():
    code = (
        "customElements.define('a-b', class extends HTMLElement {\n"
        "  connectedCallback() {\n"
        "    // strip ( from titles\n"
        "    this.textContent = this.title.replace(/\\(/g, '');\n"
        "  }\n"
        "});"
    )
    out = strip_trailing_prose(code + "\nThis registers the element.")
    assert out.rstrip() == code
