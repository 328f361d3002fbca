import logging
import os
import time
import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from gems import validators
from gems.config import ConfigStore
from gems.errors import ArtifactIOError, GemNotFoundError, InconsistentArtifactError, PresetNotFoundError
from gems.generator import ComponentGenerator, GenerateComponentOptions
from gems.llm_client import ProviderRouter
from gems.models import ProviderKind
from gems.pipeline import ArtifactPipeline
from gems.render import minify_component, render_embed
from gems.store import ArtifactStore, parse_gem_filename
from gems.styles import StylePresetStore

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

log = logging.getLogger(__name__)

CONFIG = ConfigStore.from_default_location()
ROUTER = ProviderRouter(CONFIG)
PIPELINE = ArtifactPipeline(ROUTER)
STORE = ArtifactStore(CONFIG.get("output.directory", "./generated"), PIPELINE)
STYLES = StylePresetStore.from_config(CONFIG)
GENERATOR = ComponentGenerator(PIPELINE, STORE, STYLES)


class CreateGemRequest(BaseModel):
    category: str = Field(..., min_length=1, description="Component category, e.g. hero or cta")
    description: Optional[str] = Field(default=None, description="Free-form description; overrides the category template")
    brand: Optional[str] = None
    style: Optional[str] = None
    style_content: Optional[str] = Field(default=None, description="Brand guideline text embedded in the prompt")
    provider: Optional[str] = Field(default=None, description="cli, self-hosted, hosted-api or template")


class CreateShardRequest(BaseModel):
    prompt: str = Field(..., min_length=1, description="How to reshape the latest revision")
    provider: Optional[str] = None


class RenameRequest(BaseModel):
    name: str = Field(..., min_length=1)


class ValidateRequest(BaseModel):
    code: str
    autofix: bool = False


class CreateStyleRequest(BaseModel):
    name: str = Field(..., min_length=1)
    content: str = Field(..., description="Markdown brand guidelines")


class ActiveStyleRequest(BaseModel):
    filename: Optional[str] = Field(default=None, description="Preset file to activate; null clears it")
    enabled: Optional[bool] = None


app = FastAPI(title="GEMS", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("ALLOW_ORIGINS", "*").split(",") if o.strip()],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = str(uuid.uuid4())
    start = time.time()
    request.state.request_id = rid
    response = None
    try:
        response = await call_next(request)
        return response
    finally:
        dur_ms = int((time.time() - start) * 1000)
        log.info(
            "rid=%s method=%s path=%s status=%s dur_ms=%d",
            rid, request.method, request.url.path, getattr(response, "status_code", "?"), dur_ms,
        )


def _error(status: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": message, **extra})


def _store_error(exc: Exception) -> JSONResponse:
    if isinstance(exc, (GemNotFoundError, PresetNotFoundError)):
        return _error(404, str(exc))
    if isinstance(exc, InconsistentArtifactError):
        log.error("store inconsistent err=%s completed=%s", exc, exc.completed)
        return _error(500, str(exc), completed=exc.completed)
    if isinstance(exc, ArtifactIOError):
        log.error("store io err=%s", exc)
        return _error(500, str(exc))
    return _error(400, str(exc))


def _provider(raw: Optional[str]) -> Optional[ProviderKind]:
    if not raw:
        return None
    return ProviderKind.parse(raw)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/llm/status")
async def llm_status_endpoint() -> Dict[str, Any]:
    return await ROUTER.status()


@app.get("/gems")
def list_gems_endpoint() -> Dict[str, Any]:
    return {"gems": [g.model_dump() for g in STORE.list_gems()]}


@app.post("/gems", status_code=201)
async def create_gem_endpoint(req: CreateGemRequest):
    try:
        provider = _provider(req.provider)
    except ValueError as exc:
        return _error(400, str(exc))
    options = GenerateComponentOptions(
        category=req.category,
        description=req.description,
        brand=req.brand,
        style=req.style,
        style_content=req.style_content,
        provider=provider,
        temperature=float(CONFIG.get("ai.temperature", 0.7)),
        max_tokens=int(CONFIG.get("ai.maxTokens", 4000)),
    )
    try:
        result = await GENERATOR.generate(options)
    except (ValueError, ArtifactIOError) as exc:
        return _store_error(exc)
    return {
        "gemId": result.ref.gem_id,
        "files": [result.ref.markup_file, result.ref.logic_file, result.ref.metadata_file],
        "registeredName": result.registered_name,
        "source": result.source.model_dump(mode="json"),
        "errors": result.errors,
        "warnings": result.warnings,
        "autoFixes": result.auto_fixes,
        "errorArtifact": result.is_error_artifact,
    }


@app.post("/gems/{gem_id}/shards", status_code=201)
async def create_shard_endpoint(gem_id: str, req: CreateShardRequest):
    try:
        provider = _provider(req.provider)
        shard = await STORE.create_shard(
            gem_id,
            req.prompt,
            provider=provider,
            temperature=float(CONFIG.get("ai.temperature", 0.7)),
            max_tokens=int(CONFIG.get("ai.maxTokens", 4000)),
        )
    except (ValueError, ArtifactIOError) as exc:
        return _store_error(exc)
    return {
        "shard": shard.ref.stem,
        "version": shard.ref.version,
        "files": [shard.ref.markup_file, shard.ref.logic_file, shard.ref.metadata_file],
        "registeredName": shard.metadata.registered_name,
        "source": shard.metadata.source.model_dump(mode="json") if shard.metadata.source else None,
        "errors": shard.metadata.errors,
        "warnings": shard.report.warnings,
        "errorArtifact": shard.is_error_artifact,
    }


@app.post("/gems/{gem_id}/rename")
def rename_endpoint(gem_id: str, req: RenameRequest):
    try:
        ref = STORE.rename(gem_id, req.name)
    except (ValueError, ArtifactIOError) as exc:
        return _store_error(exc)
    return {"gemId": ref.gem_id, "revisions": [r.stem for r in STORE.list_revisions(ref.gem_id)]}


@app.delete("/gems/{stem}")
def delete_endpoint(stem: str, scope: str = "shard"):
    if scope not in ("shard", "gem"):
        return _error(400, "scope must be 'shard' or 'gem'")
    try:
        if scope == "gem":
            ref = parse_gem_filename(stem)
            if ref is None:
                raise ValueError(f"not a gem name: {stem!r}")
            outcome = STORE.delete_gem(ref.gem_id)
        else:
            outcome = STORE.delete_revision(stem)
    except (ValueError, ArtifactIOError) as exc:
        return _store_error(exc)
    if not outcome.ok:
        return JSONResponse(status_code=500, content=outcome.model_dump())
    return outcome.model_dump()


@app.get("/gems/{stem}/code")
def component_code_endpoint(stem: str):
    try:
        code = STORE.read_logic(stem)
    except (ValueError, ArtifactIOError) as exc:
        return _store_error(exc)
    report = validators.validate(code)
    element = report.metadata.registered_name if report.metadata else None
    return {
        "stem": stem,
        "code": code,
        "registeredName": element,
        "minified": minify_component(code),
        "embed": render_embed(code, element) if element else None,
    }


@app.get("/styles")
def list_styles_endpoint() -> Dict[str, Any]:
    return {
        "styles": [s.model_dump() for s in STYLES.list_styles()],
        "active": CONFIG.get("styles.activePreset"),
        "enabled": STYLES.is_enabled(),
    }


@app.post("/styles", status_code=201)
def create_style_endpoint(req: CreateStyleRequest):
    try:
        filename = STYLES.create_style(req.name, req.content)
    except (ValueError, ArtifactIOError) as exc:
        return _store_error(exc)
    return {"filename": filename}


@app.put("/styles/active")
def set_active_style_endpoint(req: ActiveStyleRequest):
    try:
        STYLES.set_active_style(req.filename)
        if req.enabled is not None:
            STYLES.set_enabled(req.enabled)
    except (ValueError, ArtifactIOError) as exc:
        return _store_error(exc)
    return {"active": CONFIG.get("styles.activePreset"), "enabled": STYLES.is_enabled()}


@app.delete("/styles/{filename}")
def delete_style_endpoint(filename: str):
    try:
        STYLES.delete_style(filename)
    except (ValueError, ArtifactIOError) as exc:
        return _store_error(exc)
    return {"deleted": filename}


@app.post("/validate")
def validate_endpoint(req: ValidateRequest):
    """
    Validate a component's JavaScript.
    Returns 200 with the report when valid, 422 with it otherwise; with
    ``autofix`` the repaired code and its report are included.
    """
    report = validators.validate(req.code)
    detail: Dict[str, Any] = {"valid": report.is_valid, **report.model_dump()}
    if not report.is_valid and req.autofix:
        fix = validators.attempt_auto_fix(req.code)
        detail["autofix"] = {
            **fix.model_dump(),
            "report": validators.validate(fix.code).model_dump() if fix.fixed else None,
        }
    if not report.is_valid:
        return JSONResponse(status_code=422, content={"detail": detail})
    return {"detail": detail}
