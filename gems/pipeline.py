from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from gems import validators
from gems.llm_client import ProviderRouter
from gems.llm_parsing import extract
from gems.models import GenerationRequest, GenerationResult, SourceDescriptor, ValidationReport

log = logging.getLogger(__name__)


class PipelineOutcome(BaseModel):
    code: str
    registered_name: Optional[str] = None
    usage_markup: Optional[str] = None
    report: ValidationReport
    source: SourceDescriptor
    # Errors found before any repair; empty when the first candidate was valid
    original_errors: List[str] = Field(default_factory=list)
    auto_fixes: List[str] = Field(default_factory=list)
    is_error_artifact: bool = False


class ArtifactPipeline:
    """router -> extract -> validate -> [auto-fix] -> [error artifact].

    Always produces a syntactically and structurally valid component.
    """

    def __init__(self, router: ProviderRouter):
        self.router = router

    async def run(self, request: GenerationRequest, category: str, brand: Optional[str] = None) -> PipelineOutcome:
        result = await self.router.generate(request)
        return self.process(result, category, brand=brand)

    def process(self, result: GenerationResult, category: str, brand: Optional[str] = None) -> PipelineOutcome:
        try:
            return self._process(result, category, brand)
        except Exception:
            log.exception("pipeline crashed category=%s source=%s", category, result.source.kind.value)
            return self._error_outcome(
                result.source, category, brand, ["Internal error while processing the generated code"], []
            )

    def _process(self, result: GenerationResult, category: str, brand: Optional[str]) -> PipelineOutcome:
        extraction = extract(result.content)
        code = extraction.code
        if not code:
            log.warning("pipeline empty extraction category=%s", category)
            return self._error_outcome(result.source, category, brand, ["Model response contained no code"], [])

        report = validators.validate(code)
        for warning in report.warnings:
            log.info("pipeline warning category=%s msg=%s", category, warning)
        if report.is_valid:
            return PipelineOutcome(
                code=code,
                registered_name=report.metadata.registered_name if report.metadata else None,
                usage_markup=extraction.usage_markup,
                report=report,
                source=result.source,
            )

        log.info("pipeline invalid category=%s errors=%s; attempting auto-fix", category, report.errors)
        fix = validators.attempt_auto_fix(code)
        if fix.fixed:
            fixed_report = validators.validate(fix.code)
            if fixed_report.is_valid:
                log.info("pipeline auto-fix ok category=%s changes=%s", category, fix.changes)
                return PipelineOutcome(
                    code=fix.code,
                    registered_name=fixed_report.metadata.registered_name if fixed_report.metadata else None,
                    usage_markup=extraction.usage_markup,
                    report=fixed_report,
                    source=result.source,
                    original_errors=report.errors,
                    auto_fixes=fix.changes,
                )
            errors = fixed_report.errors
        else:
            errors = report.errors
        log.warning("pipeline giving up category=%s errors=%s", category, errors)
        return self._error_outcome(result.source, category, brand, errors, fix.changes, original=report.errors)

    def _error_outcome(
        self,
        source: SourceDescriptor,
        category: str,
        brand: Optional[str],
        errors: List[str],
        changes: List[str],
        original: Optional[List[str]] = None,
    ) -> PipelineOutcome:
        code = validators.create_error_component(category, errors, brand)
        report = validators.validate(code)
        return PipelineOutcome(
            code=code,
            registered_name=report.metadata.registered_name if report.metadata else None,
            report=report,
            source=source,
            original_errors=list(original if original is not None else errors),
            auto_fixes=changes,
            is_error_artifact=True,
        )
