from __future__ import annotations
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ProviderKind(str, Enum):
    CLI = "cli"
    SELF_HOSTED = "self-hosted"
    HOSTED_API = "hosted-api"
    TEMPLATE = "template"

    @classmethod
    def parse(cls, value: Any) -> "ProviderKind":
        """Accept enum members, canonical values and the legacy config names."""
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().lower()
        if key in _ALIASES:
            return _ALIASES[key]
        return cls(key)


_ALIASES = {
    "claude-code": ProviderKind.CLI,
    "claude": ProviderKind.CLI,
    "local": ProviderKind.SELF_HOSTED,
    "network": ProviderKind.SELF_HOSTED,
    "cloud": ProviderKind.HOSTED_API,
    "openrouter": ProviderKind.HOSTED_API,
}


class SourceDescriptor(BaseModel):
    kind: ProviderKind
    model: Optional[str] = None
    endpoint: Optional[str] = None


class GenerationRequest(BaseModel):
    prompt: str
    provider: Optional[ProviderKind] = None
    temperature: float = 0.7
    max_tokens: int = Field(default=4000, ge=1)


class GenerationResult(BaseModel):
    content: str
    source: SourceDescriptor


class StructuralMetadata(BaseModel):
    registered_name: Optional[str] = None
    declared_unit_name: Optional[str] = None
    has_shadow_boundary: bool = False
    has_lifecycle_hook: bool = False
    has_initializer: bool = False


class ValidationReport(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    metadata: Optional[StructuralMetadata] = None


class AutoFixResult(BaseModel):
    fixed: bool
    code: str
    changes: List[str] = Field(default_factory=list)


class RevisionRef(BaseModel):
    """One revision of a gem: version 1 is the unsuffixed base, shards carry -v{n}."""

    model_config = ConfigDict(frozen=True)

    category: str
    timestamp: int
    version: int = Field(default=1, ge=1)

    @property
    def gem_id(self) -> str:
        return f"{self.category}-{self.timestamp}"

    @property
    def stem(self) -> str:
        if self.version == 1:
            return self.gem_id
        return f"{self.gem_id}-v{self.version}"

    @property
    def markup_file(self) -> str:
        return f"{self.stem}.html"

    @property
    def logic_file(self) -> str:
        return f"{self.stem}.js"

    @property
    def metadata_file(self) -> str:
        return f"{self.stem}.json"

    @property
    def is_shard(self) -> bool:
        return self.version > 1


class RevisionMetadata(BaseModel):
    """On-disk metadata companion. Field names keep the camelCase the files use."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    category: str
    created_at: int = Field(alias="createdAt")
    prompt: str = ""
    source: Optional[SourceDescriptor] = None
    version: int = 1
    base_identity: str = Field(alias="baseIdentity")
    parent: Optional[str] = None
    registered_name: Optional[str] = Field(default=None, alias="registeredName")
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    auto_fixes: List[str] = Field(default_factory=list, alias="autoFixes")
    error_artifact: bool = Field(default=False, alias="errorArtifact")
    highest_version: Optional[int] = Field(default=None, alias="highestVersion")

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class GemSummary(BaseModel):
    gem_id: str
    category: str
    timestamp: int
    revisions: List[str] = Field(default_factory=list)
    latest: str


class Extraction(BaseModel):
    """Code candidate pulled out of a raw model response."""

    code: str
    usage_markup: Optional[str] = None
    # fence | inline-script | declaration | whole-text
    rule: str
