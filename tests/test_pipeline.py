from gems.models import GenerationResult, ProviderKind, SourceDescriptor
from gems.pipeline import ArtifactPipeline


SOURCE = SourceDescriptor(kind=ProviderKind.SELF_HOSTED, model="devstral", endpoint="http://localhost:1234")

GOOD = """class FaqList extends HTMLElement {
  constructor() {
    super();
    this.attachShadow({ mode: 'open' });
  }
  connectedCallback() {
    this.shadowRoot.innerHTML = '<dl></dl>';
  }
}
customElements.define('faq-list', FaqList);"""


def _process(content, category="faq"):
    # the router is never touched by process()
    return ArtifactPipeline(router=None).process(GenerationResult(content=content, source=SOURCE), category)


def test_valid_code_passes_through():
    out = _process("```html\n<faq-list></faq-list>\n<script>\n" + GOOD + "\n</script>\n```")
    assert out.is_error_artifact is False
    assert out.code == GOOD
    assert out.registered_name == "faq-list"
    assert out.usage_markup == "<faq-list></faq-list>"
    assert out.original_errors == []
    assert out.source == SOURCE


def test_repairable_code_is_fixed():
    out = _process(GOOD.replace("    super();\n", ""))
    assert out.is_error_artifact is False
    assert out.report.is_valid is True
    assert out.original_errors == ["Constructor must call super() before anything else"]
    assert len(out.auto_fixes) == 1


def test_syntax_error_becomes_error_artifact():
    out = _process("```js\n" + GOOD + "\n}\n```")
    assert out.is_error_artifact is True
    assert out.registered_name == "faq-error"
    assert out.report.is_valid is True
    assert len(out.original_errors) == 1
    assert out.original_errors[0].startswith("JavaScript syntax error:")


def test_empty_response_becomes_error_artifact():
    out = _process("")
    assert out.is_error_artifact is True
    assert out.original_errors == ["Model response contained no code"]
