import asyncio
import json
from pathlib import Path

import pytest

from gems import validators
from gems.errors import GemNotFoundError, InconsistentArtifactError
from gems.models import ProviderKind, SourceDescriptor
from gems.pipeline import PipelineOutcome
from gems.store import ArtifactStore, parse_gem_filename, sanitize_name


HERO = """class HeroSection extends HTMLElement {
  constructor() {
    super();
    this.attachShadow({ mode: 'open' });
  }

  connectedCallback() {
    this.shadowRoot.innerHTML = '<h1>Hello</h1>';
  }
}

customElements.define('hero-section', HeroSection);
"""

SOURCE = SourceDescriptor(kind=ProviderKind.TEMPLATE, model="Built-in Template")


class FakePipeline:
    """Returns queued codes as if a backend had produced them."""

    def __init__(self, *codes, error=False):
        self.codes = list(codes)
        self.error = error
        self.requests = []

    async def run(self, request, category, brand=None):
        self.requests.append(request)
        code = self.codes.pop(0)
        report = validators.validate(code)
        return PipelineOutcome(
            code=code,
            registered_name=report.metadata.registered_name,
            report=report,
            source=SourceDescriptor(kind=ProviderKind.HOSTED_API, model="m", endpoint="OpenRouter"),
            original_errors=["JavaScript syntax error: boom"] if self.error else [],
            is_error_artifact=self.error,
        )


def _store(tmp_path, pipeline=None, ts=1000):
    return ArtifactStore(tmp_path, pipeline=pipeline, clock=lambda: ts)


def _files(tmp_path):
    return sorted(p.name for p in Path(tmp_path).iterdir())


@pytest.mark.parametrize(
    "name, expected",
    [
        ("hero-1000", ("hero", 1000, 1)),
        ("my-hero-1000-v3.js", ("my-hero", 1000, 3)),
        ("cta-123-v2.html", ("cta", 123, 2)),
        ("hero-2-1000.json", ("hero-2", 1000, 1)),
    ],
)
def test_parse_gem_filename(name, expected):
    ref = parse_gem_filename(name)
    assert (ref.category, ref.timestamp, ref.version) == expected


@pytest.mark.parametrize("name", ["readme.txt", "hero", "hero-1000-v1", "hero-1000-v0", "hero-abc"])
def test_parse_gem_filename_rejects(name):
    assert parse_gem_filename(name) is None


def test_sanitize_name():
    assert sanitize_name("My Hero!!") == "my-hero"
    assert sanitize_name("  --Big   -- Deal--  ") == "big-deal"
    assert len(sanitize_name("x" * 80)) == 50


def test_persist_writes_consistent_triple(tmp_path):
    store = _store(tmp_path)
    ref = store.persist("hero", HERO, "the prompt", SOURCE)
    assert ref.gem_id == "hero-1000"
    assert _files(tmp_path) == ["hero-1000.html", "hero-1000.js", "hero-1000.json"]
    markup = (tmp_path / "hero-1000.html").read_text()
    assert 'src="./hero-1000.js"' in markup
    assert "<hero-section></hero-section>" in markup
    meta = json.loads((tmp_path / "hero-1000.json").read_text())
    assert meta["prompt"] == "the prompt"
    assert meta["createdAt"] == 1000
    assert meta["version"] == 1
    assert meta["baseIdentity"] == "hero-1000"
    assert meta["source"]["kind"] == "template"
    assert meta["registeredName"] == "hero-section"


def test_persist_bumps_timestamp_on_collision(tmp_path):
    store = _store(tmp_path)
    first = store.persist("hero", HERO, "p", SOURCE)
    second = store.persist("hero", HERO, "p", SOURCE)
    assert first.gem_id == "hero-1000"
    assert second.gem_id == "hero-1001"


def test_persist_keeps_usage_markup_for_the_registered_element(tmp_path):
    store = _store(tmp_path)
    store.persist("hero", HERO, "p", SOURCE, usage_markup='<hero-section title="Hi"></hero-section>')
    markup = (tmp_path / "hero-1000.html").read_text()
    assert '<hero-section title="Hi"></hero-section>' in markup


def test_next_version_starts_at_two(tmp_path):
    store = _store(tmp_path)
    store.persist("hero", HERO, "p", SOURCE)
    assert store.next_version("hero-1000") == 2


def test_create_shard_rewrites_name_and_references(tmp_path):
    pipeline = FakePipeline(HERO.replace("<h1>Hello</h1>", "<h1 class=\"blue\">Hello</h1>"))
    store = _store(tmp_path, pipeline)
    store.persist("hero", HERO, "p", SOURCE)

    shard = asyncio.run(store.create_shard("hero-1000", "make it blue"))

    assert shard.ref.stem == "hero-1000-v2"
    code = (tmp_path / "hero-1000-v2.js").read_text()
    assert "customElements.define('hero-section-v2', HeroSection)" in code
    assert "'hero-section'" not in code
    markup = (tmp_path / "hero-1000-v2.html").read_text()
    assert 'src="./hero-1000-v2.js"' in markup
    assert "<hero-section-v2></hero-section-v2>" in markup
    meta = store.read_metadata("hero-1000-v2")
    assert meta.prompt == "make it blue"
    assert meta.parent == "hero-1000"
    assert meta.version == 2
    assert meta.base_identity == "hero-1000"
    assert meta.source.kind == ProviderKind.HOSTED_API
    prompt = pipeline.requests[0].prompt
    assert "make it blue" in prompt
    assert "customElements.define('hero-section', HeroSection);" in prompt


def test_shards_derive_from_latest_and_never_reuse_numbers(tmp_path):
    pipeline = FakePipeline(HERO, HERO.replace("'hero-section'", "'hero-section-v2'"))
    store = _store(tmp_path, pipeline)
    store.persist("hero", HERO, "p", SOURCE)
    asyncio.run(store.create_shard("hero-1000", "first"))
    third = asyncio.run(store.create_shard("hero-1000", "second"))

    assert third.ref.stem == "hero-1000-v3"
    assert third.metadata.parent == "hero-1000-v2"
    assert "'hero-section-v3'" in (tmp_path / "hero-1000-v3.js").read_text()
    assert "<hero-section-v3></hero-section-v3>" in (tmp_path / "hero-1000-v3.html").read_text()
    assert store.next_version("hero-1000") == 4

    store.delete_revision("hero-1000-v3")
    assert store.next_version("hero-1000") == 4
    assert store.read_metadata("hero-1000").highest_version == 3


def test_error_artifact_shard_stays_consistent(tmp_path):
    error_code = validators.create_error_component("hero", ["JavaScript syntax error: boom"])
    store = _store(tmp_path, FakePipeline(error_code, error=True))
    store.persist("hero", HERO, "p", SOURCE)
    shard = asyncio.run(store.create_shard("hero-1000", "break it"))
    assert shard.is_error_artifact is True
    assert shard.metadata.registered_name == "hero-error-v2"
    assert shard.metadata.errors == ["JavaScript syntax error: boom"]
    assert "<hero-error-v2></hero-error-v2>" in (tmp_path / "hero-1000-v2.html").read_text()
    assert validators.validate((tmp_path / "hero-1000-v2.js").read_text()).is_valid


def test_create_shard_for_unknown_gem(tmp_path):
    store = _store(tmp_path, FakePipeline(HERO))
    with pytest.raises(GemNotFoundError):
        asyncio.run(store.create_shard("hero-42", "anything"))


def test_rename_moves_every_revision(tmp_path):
    store = _store(tmp_path, FakePipeline(HERO))
    store.persist("hero", HERO, "p", SOURCE)
    asyncio.run(store.create_shard("hero-1000", "again"))

    ref = store.rename("hero-1000", "My Hero!!")

    assert ref.gem_id == "my-hero-1000"
    assert _files(tmp_path) == [
        "my-hero-1000-v2.html",
        "my-hero-1000-v2.js",
        "my-hero-1000-v2.json",
        "my-hero-1000.html",
        "my-hero-1000.js",
        "my-hero-1000.json",
    ]
    assert 'src="./my-hero-1000.js"' in (tmp_path / "my-hero-1000.html").read_text()
    assert 'src="./my-hero-1000-v2.js"' in (tmp_path / "my-hero-1000-v2.html").read_text()
    base = store.read_metadata("my-hero-1000")
    shard = store.read_metadata("my-hero-1000-v2")
    assert base.category == "my-hero"
    assert base.created_at == 1000
    assert shard.base_identity == "my-hero-1000"
    assert shard.parent == "my-hero-1000"


def test_rename_rejects_bad_input(tmp_path):
    store = _store(tmp_path)
    store.persist("hero", HERO, "p", SOURCE)
    with pytest.raises(ValueError):
        store.rename("hero-1000-v2", "x")
    with pytest.raises(ValueError):
        store.rename("hero-1000", "!!!")
    with pytest.raises(GemNotFoundError):
        store.rename("cta-5", "new")


def test_rename_interrupted_midway_is_reported(tmp_path):
    store = _store(tmp_path, FakePipeline(HERO))
    store.persist("hero", HERO, "p", SOURCE)
    asyncio.run(store.create_shard("hero-1000", "again"))
    (tmp_path / "hero-1000-v2.js").unlink()

    with pytest.raises(InconsistentArtifactError) as excinfo:
        store.rename("hero-1000", "banner")
    assert "hero-1000.js -> banner-1000.js" in excinfo.value.completed
    assert (tmp_path / "banner-1000.html").exists()


def test_delete_revision(tmp_path):
    store = _store(tmp_path)
    store.persist("hero", HERO, "p", SOURCE)
    outcome = store.delete_revision("hero-1000")
    assert outcome.ok is True
    assert sorted(outcome.removed) == ["hero-1000.html", "hero-1000.js", "hero-1000.json"]
    assert _files(tmp_path) == []
    with pytest.raises(GemNotFoundError):
        store.delete_revision("hero-1000")


def test_delete_gem_removes_shards_and_orphans(tmp_path):
    store = _store(tmp_path, FakePipeline(HERO))
    store.persist("hero", HERO, "p", SOURCE)
    asyncio.run(store.create_shard("hero-1000", "again"))
    (tmp_path / "hero-1000-v5.json").write_text("{}")
    other = ArtifactStore(tmp_path, clock=lambda: 2000).persist("cta", HERO, "p", SOURCE)

    outcome = store.delete_gem("hero-1000")

    assert outcome.ok is True
    assert "hero-1000-v5.json" in outcome.removed
    assert len(outcome.removed) == 7
    assert _files(tmp_path) == [f"{other.gem_id}.html", f"{other.gem_id}.js", f"{other.gem_id}.json"]


def test_delete_reports_partial_failure(tmp_path, monkeypatch):
    store = _store(tmp_path)
    store.persist("hero", HERO, "p", SOURCE)
    real_unlink = Path.unlink

    def flaky_unlink(self, *args, **kwargs):
        if self.suffix == ".js":
            raise PermissionError("denied")
        return real_unlink(self, *args, **kwargs)

    monkeypatch.setattr(Path, "unlink", flaky_unlink)
    outcome = store.delete_revision("hero-1000")
    assert outcome.ok is False
    assert sorted(outcome.removed) == ["hero-1000.html", "hero-1000.json"]
    assert len(outcome.failed) == 1 and outcome.failed[0].startswith("hero-1000.js")


def test_list_gems_newest_first(tmp_path):
    _store(tmp_path, ts=1000).persist("hero", HERO, "p", SOURCE)
    _store(tmp_path, ts=5000).persist("faq", HERO, "p", SOURCE)
    gems = ArtifactStore(tmp_path).list_gems()
    assert [g.gem_id for g in gems] == ["faq-5000", "hero-1000"]
    assert gems[1].revisions == ["hero-1000"]
    assert gems[1].latest == "hero-1000"
