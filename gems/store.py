from __future__ import annotations

import json
import logging
import os
import re
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from gems import validators
from gems.errors import ArtifactIOError, GemNotFoundError, InconsistentArtifactError
from gems.llm_prompts import build_shard_prompt
from gems.models import (
    GemSummary,
    GenerationRequest,
    ProviderKind,
    RevisionMetadata,
    RevisionRef,
    SourceDescriptor,
    ValidationReport,
)
from gems.render import patch_markup, render_markup

log = logging.getLogger(__name__)

GEM_FILENAME_RE = re.compile(r"^(.+?)-(\d+)(?:-v(\d+))?$")
COMPANION_EXTENSIONS = (".html", ".js", ".json")
MAX_NAME_LENGTH = 50


def parse_gem_filename(name: str) -> Optional[RevisionRef]:
    """``{category}-{timestamp}[-v{n}]`` with or without a companion extension.

    Returns None for anything else, including an explicit ``-v0``/``-v1``
    suffix, which no revision ever carries.
    """
    stem = Path(name).name
    for ext in COMPANION_EXTENSIONS:
        if stem.endswith(ext):
            stem = stem[: -len(ext)]
            break
    m = GEM_FILENAME_RE.match(stem)
    if not m:
        return None
    version = 1
    if m.group(3) is not None:
        version = int(m.group(3))
        if version < 2:
            return None
    return RevisionRef(category=m.group(1), timestamp=int(m.group(2)), version=version)


def sanitize_name(name: str) -> str:
    s = (name or "").lower()
    s = re.sub(r"[^a-z0-9 -]", "", s)
    s = re.sub(r"[ -]+", "-", s).strip("-")
    return s[:MAX_NAME_LENGTH].strip("-")


def suffix_registered_name(code: str, name: Optional[str], version: int) -> tuple:
    """Rename the registered element to ``{base}-v{version}`` in every quoted literal."""
    if not name:
        return name, code
    base = re.sub(r"-v\d+$", "", name)
    new_name = f"{base}-v{version}"
    pattern = re.compile(r"(['\"`])" + re.escape(name) + r"\1")
    return new_name, pattern.sub(lambda m: f"{m.group(1)}{new_name}{m.group(1)}", code)


class DeleteOutcome(BaseModel):
    ok: bool
    removed: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)


class ShardResult(BaseModel):
    ref: RevisionRef
    metadata: RevisionMetadata
    report: ValidationReport

    @property
    def is_error_artifact(self) -> bool:
        return self.metadata.error_artifact


class ArtifactStore:
    """Revisions of gems as companion file triples in one directory.

    Writes go logic, then metadata, then markup: markup is what discovery
    scans for, so a revision only becomes visible once it is complete.
    """

    def __init__(self, directory, pipeline=None, clock: Optional[Callable[[], int]] = None):
        self.directory = Path(directory)
        self.pipeline = pipeline
        self._clock = clock or (lambda: int(time.time() * 1000))

    # --- paths and raw io ---

    def _path(self, filename: str) -> Path:
        return self.directory / filename

    def _write_text(self, path: Path, text: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_text(text, encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            raise ArtifactIOError(f"could not write {path.name}: {exc}") from exc

    def _read_text(self, path: Path) -> str:
        if not path.is_file():
            raise GemNotFoundError(f"{path.name} does not exist")
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ArtifactIOError(f"could not read {path.name}: {exc}") from exc

    def _write_metadata(self, ref: RevisionRef, meta: RevisionMetadata) -> None:
        self._write_text(self._path(ref.metadata_file), json.dumps(meta.to_json_dict(), indent=2) + "\n")

    def _write_revision(self, ref: RevisionRef, code: str, meta: RevisionMetadata, markup: str) -> None:
        self._write_text(self._path(ref.logic_file), code)
        self._write_metadata(ref, meta)
        self._write_text(self._path(ref.markup_file), markup)

    def _ref(self, stem: str) -> RevisionRef:
        ref = parse_gem_filename(stem)
        if ref is None:
            raise ValueError(f"not a gem name: {stem!r}")
        return ref

    def _base_ref(self, gem_id: str) -> RevisionRef:
        ref = self._ref(gem_id)
        if ref.is_shard:
            raise ValueError(f"{gem_id!r} names a shard, not a gem")
        return ref

    # --- discovery ---

    def _scan(self) -> List[RevisionRef]:
        if not self.directory.is_dir():
            return []
        refs = []
        for path in self.directory.glob("*.html"):
            ref = parse_gem_filename(path.name)
            if ref is not None:
                refs.append(ref)
        return refs

    def list_revisions(self, gem_id: str) -> List[RevisionRef]:
        base = self._base_ref(gem_id)
        revs = [r for r in self._scan() if r.gem_id == base.gem_id]
        return sorted(revs, key=lambda r: r.version)

    def latest_revision(self, gem_id: str) -> Optional[RevisionRef]:
        revs = self.list_revisions(gem_id)
        return revs[-1] if revs else None

    def _recorded_high_water(self, base: RevisionRef) -> int:
        try:
            meta = self.read_metadata(base.stem)
        except (GemNotFoundError, ArtifactIOError):
            return 0
        return meta.highest_version or 0

    def next_version(self, gem_id: str) -> int:
        """Next shard number: one past the highest version ever assigned, never reused."""
        base = self._base_ref(gem_id)
        existing = max((r.version for r in self.list_revisions(gem_id)), default=1)
        return max(existing, self._recorded_high_water(base), 1) + 1

    def _record_version(self, base: RevisionRef, version: int) -> None:
        try:
            meta = self.read_metadata(base.stem)
        except GemNotFoundError:
            log.info("store no base metadata gem=%s; version mark not recorded", base.gem_id)
            return
        if (meta.highest_version or 1) >= version:
            return
        meta.highest_version = version
        self._write_metadata(base, meta)

    def list_gems(self) -> List[GemSummary]:
        groups: Dict[str, List[RevisionRef]] = {}
        for ref in self._scan():
            groups.setdefault(ref.gem_id, []).append(ref)
        out = []
        for gem_id, refs in groups.items():
            refs.sort(key=lambda r: r.version)
            out.append(
                GemSummary(
                    gem_id=gem_id,
                    category=refs[0].category,
                    timestamp=refs[0].timestamp,
                    revisions=[r.stem for r in refs],
                    latest=refs[-1].stem,
                )
            )
        out.sort(key=lambda g: g.timestamp, reverse=True)
        return out

    # --- reads ---

    def read_logic(self, stem: str) -> str:
        return self._read_text(self._path(self._ref(stem).logic_file))

    def read_markup(self, stem: str) -> str:
        return self._read_text(self._path(self._ref(stem).markup_file))

    def read_metadata(self, stem: str) -> RevisionMetadata:
        raw = self._read_text(self._path(self._ref(stem).metadata_file))
        try:
            return RevisionMetadata.model_validate(json.loads(raw))
        except ValueError as exc:
            raise ArtifactIOError(f"corrupt metadata for {stem}: {exc}") from exc

    # --- writes ---

    def _identity_taken(self, category: str, timestamp: int) -> bool:
        gem_id = f"{category}-{timestamp}"
        if any(self._path(gem_id + ext).exists() for ext in COMPANION_EXTENSIONS):
            return True
        return any(r.gem_id == gem_id for r in self._scan())

    def persist(
        self,
        category: str,
        code: str,
        prompt: str,
        source: SourceDescriptor,
        usage_markup: Optional[str] = None,
        report: Optional[ValidationReport] = None,
        auto_fixes: Optional[List[str]] = None,
        error_artifact: bool = False,
        errors: Optional[List[str]] = None,
    ) -> RevisionRef:
        """Store a brand-new gem as version 1 and return its reference."""
        slug = sanitize_name(category)
        if not slug:
            raise ValueError(f"category {category!r} is empty after sanitizing")
        ts = self._clock()
        while self._identity_taken(slug, ts):
            ts += 1
        ref = RevisionRef(category=slug, timestamp=ts)
        report = report or validators.validate(code)
        element = report.metadata.registered_name if report.metadata else None
        meta = RevisionMetadata(
            category=slug,
            createdAt=ts,
            prompt=prompt,
            source=source,
            version=1,
            baseIdentity=ref.gem_id,
            registeredName=element,
            errors=list(errors) if errors is not None else report.errors,
            warnings=report.warnings,
            autoFixes=list(auto_fixes or []),
            errorArtifact=error_artifact,
            highestVersion=1,
        )
        self._write_revision(ref, code, meta, render_markup(ref.logic_file, element, usage_markup))
        log.info("store persisted gem=%s element=%s error_artifact=%s", ref.gem_id, element, error_artifact)
        return ref

    async def create_shard(
        self,
        gem_id: str,
        instruction: str,
        provider: Optional[ProviderKind] = None,
        temperature: float = 0.7,
        max_tokens: int = 4000,
    ) -> ShardResult:
        """Reshape the latest revision of ``gem_id`` into a new numbered shard."""
        if self.pipeline is None:
            raise RuntimeError("ArtifactStore needs a pipeline to create shards")
        base = self._base_ref(gem_id)
        latest = self.latest_revision(gem_id)
        if latest is None:
            raise GemNotFoundError(f"gem {gem_id} does not exist")
        source_code = self.read_logic(latest.stem)
        source_markup = self.read_markup(latest.stem)
        try:
            source_element = self.read_metadata(latest.stem).registered_name
        except GemNotFoundError:
            source_element = None
        if not source_element:
            meta = validators.validate(source_code).metadata
            source_element = meta.registered_name if meta else None

        request = GenerationRequest(
            prompt=build_shard_prompt(source_code, instruction),
            provider=provider,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        outcome = await self.pipeline.run(request, category=base.category)

        version = self.next_version(gem_id)
        ref = RevisionRef(category=base.category, timestamp=base.timestamp, version=version)
        element, code = suffix_registered_name(outcome.code, outcome.registered_name, version)
        markup = patch_markup(source_markup, ref.logic_file, source_element, element)
        if element and f"<{element}" not in markup:
            markup = render_markup(ref.logic_file, element, outcome.usage_markup)
        report = validators.validate(code)
        meta = RevisionMetadata(
            category=base.category,
            createdAt=self._clock(),
            prompt=instruction,
            source=outcome.source,
            version=version,
            baseIdentity=base.gem_id,
            parent=latest.stem,
            registeredName=element,
            errors=outcome.original_errors if outcome.is_error_artifact else report.errors,
            warnings=report.warnings,
            autoFixes=outcome.auto_fixes,
            errorArtifact=outcome.is_error_artifact,
        )
        self._write_revision(ref, code, meta, markup)
        self._record_version(base, version)
        log.info("store shard gem=%s version=%d parent=%s element=%s", base.gem_id, version, latest.stem, element)
        return ShardResult(ref=ref, metadata=meta, report=report)

    # --- rename / delete ---

    def _move_revision(self, old: RevisionRef, new: RevisionRef, completed: List[str]) -> None:
        os.replace(self._path(old.logic_file), self._path(new.logic_file))
        completed.append(f"{old.logic_file} -> {new.logic_file}")

        try:
            meta = self.read_metadata(old.stem)
        except GemNotFoundError:
            meta = None
        if meta is not None:
            meta.category = new.category
            meta.base_identity = new.gem_id
            if meta.parent:
                parent = parse_gem_filename(meta.parent)
                if parent is not None and parent.gem_id == old.gem_id:
                    meta.parent = RevisionRef(category=new.category, timestamp=new.timestamp, version=parent.version).stem
            self._write_metadata(new, meta)
            completed.append(new.metadata_file)

        markup = self._read_text(self._path(old.markup_file))
        self._write_text(self._path(new.markup_file), patch_markup(markup, new.logic_file))
        completed.append(new.markup_file)

        if meta is not None:
            self._path(old.metadata_file).unlink()
            completed.append(f"-{old.metadata_file}")
        self._path(old.markup_file).unlink()
        completed.append(f"-{old.markup_file}")

    def rename(self, gem_id: str, new_name: str) -> RevisionRef:
        """Move every revision of a gem to a new category, keeping its timestamp."""
        base = self._base_ref(gem_id)
        slug = sanitize_name(new_name)
        if not slug:
            raise ValueError(f"name {new_name!r} is empty after sanitizing")
        target = RevisionRef(category=slug, timestamp=base.timestamp)
        if slug == base.category:
            return target
        revisions = self.list_revisions(gem_id)
        if not revisions:
            raise GemNotFoundError(f"gem {gem_id} does not exist")
        if self._identity_taken(slug, base.timestamp):
            raise ValueError(f"{target.gem_id} already exists")

        completed: List[str] = []
        for rev in revisions:
            new_rev = RevisionRef(category=slug, timestamp=rev.timestamp, version=rev.version)
            try:
                self._move_revision(rev, new_rev, completed)
            except OSError as exc:
                log.error("store rename interrupted gem=%s at=%s err=%s", gem_id, rev.stem, exc)
                raise InconsistentArtifactError(f"rename of {gem_id} stopped at {rev.stem}: {exc}", completed) from exc
        log.info("store renamed gem=%s to=%s revisions=%d", gem_id, target.gem_id, len(revisions))
        return target

    def _remove_files(self, refs: List[RevisionRef], label: str) -> DeleteOutcome:
        removed: List[str] = []
        failed: List[str] = []
        existed = False
        for ref in refs:
            for filename in (ref.markup_file, ref.logic_file, ref.metadata_file):
                path = self._path(filename)
                if not path.exists():
                    continue
                existed = True
                try:
                    path.unlink()
                    removed.append(filename)
                except OSError as exc:
                    log.warning("store delete failed file=%s err=%s", filename, exc)
                    failed.append(f"{filename}: {exc}")
        if not existed:
            raise GemNotFoundError(f"{label} does not exist")
        return DeleteOutcome(ok=not failed, removed=removed, failed=failed)

    def delete_revision(self, stem: str) -> DeleteOutcome:
        ref = self._ref(stem)
        outcome = self._remove_files([ref], ref.stem)
        log.info("store deleted revision=%s ok=%s", ref.stem, outcome.ok)
        return outcome

    def delete_gem(self, gem_id: str) -> DeleteOutcome:
        base = self._base_ref(gem_id)
        refs = {r.stem: r for r in self.list_revisions(gem_id)}
        # Half-written revisions have no markup but still belong to the gem
        if self.directory.is_dir():
            for path in self.directory.iterdir():
                ref = parse_gem_filename(path.name)
                if ref is not None and ref.gem_id == base.gem_id and path.suffix in COMPANION_EXTENSIONS:
                    refs.setdefault(ref.stem, ref)
        outcome = self._remove_files(sorted(refs.values(), key=lambda r: r.version), base.gem_id)
        log.info("store deleted gem=%s files=%d ok=%s", base.gem_id, len(outcome.removed), outcome.ok)
        return outcome
