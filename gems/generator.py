from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from gems.llm_prompts import build_component_prompt
from gems.models import GenerationRequest, ProviderKind, RevisionRef, SourceDescriptor
from gems.pipeline import ArtifactPipeline
from gems.store import ArtifactStore
from gems.styles import StylePresetStore

log = logging.getLogger(__name__)


class GenerateComponentOptions(BaseModel):
    category: str
    description: Optional[str] = None
    brand: Optional[str] = None
    style: Optional[str] = None
    style_content: Optional[str] = None
    provider: Optional[ProviderKind] = None
    temperature: float = 0.7
    max_tokens: int = 4000


class GeneratedComponent(BaseModel):
    ref: RevisionRef
    registered_name: Optional[str] = None
    source: SourceDescriptor
    prompt: str
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    auto_fixes: List[str] = Field(default_factory=list)
    is_error_artifact: bool = False


class ComponentGenerator:
    def __init__(self, pipeline: ArtifactPipeline, store: ArtifactStore, styles: Optional[StylePresetStore] = None):
        self.pipeline = pipeline
        self.store = store
        self.styles = styles

    async def generate(self, options: GenerateComponentOptions) -> GeneratedComponent:
        style_content = options.style_content
        # An explicit guideline wins over the active preset
        if not style_content and self.styles is not None:
            style_content = self.styles.active_style_content()
        prompt = build_component_prompt(
            options.category,
            description=options.description,
            brand=options.brand,
            style=options.style,
            style_content=style_content,
        )
        request = GenerationRequest(
            prompt=prompt,
            provider=options.provider,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
        )
        outcome = await self.pipeline.run(request, category=options.category, brand=options.brand)
        ref = self.store.persist(
            options.category,
            outcome.code,
            prompt,
            outcome.source,
            usage_markup=outcome.usage_markup,
            report=outcome.report,
            auto_fixes=outcome.auto_fixes,
            error_artifact=outcome.is_error_artifact,
            errors=outcome.original_errors if outcome.is_error_artifact else None,
        )
        if outcome.is_error_artifact:
            log.warning("generator error artifact gem=%s errors=%s", ref.gem_id, outcome.original_errors)
        return GeneratedComponent(
            ref=ref,
            registered_name=outcome.registered_name,
            source=outcome.source,
            prompt=prompt,
            errors=outcome.original_errors if outcome.is_error_artifact else outcome.report.errors,
            warnings=outcome.report.warnings,
            auto_fixes=outcome.auto_fixes,
            is_error_artifact=outcome.is_error_artifact,
        )
