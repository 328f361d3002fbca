from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from gems.cli_runner import CliTask, FailureReason, TaskState
from gems.config import ConfigStore
from gems.errors import (
    AuthenticationError,
    AvailabilityError,
    ProviderError,
    ProviderResponseError,
    ProviderTimeoutError,
    RateLimitError,
)
from gems.llm_prompts import CODE_ONLY_SYSTEM_PROMPT, SELF_HOSTED_SYSTEM_PROMPT, with_output_contract
from gems.models import GenerationRequest, GenerationResult, ProviderKind, SourceDescriptor
from gems.validators import default_component

log = logging.getLogger(__name__)

FALLBACK_ORDER: List[ProviderKind] = [
    ProviderKind.CLI,
    ProviderKind.SELF_HOSTED,
    ProviderKind.HOSTED_API,
    ProviderKind.TEMPLATE,
]

# Rejected credentials skip tiers that would likely fail the same way
AUTH_FALLBACK: Dict[ProviderKind, ProviderKind] = {
    ProviderKind.CLI: ProviderKind.HOSTED_API,
    ProviderKind.HOSTED_API: ProviderKind.TEMPLATE,
}

_COMPONENT_NAME_RE = re.compile(r"component name:\s*([a-z][\w-]*)", re.IGNORECASE)
_GENERATE_A_RE = re.compile(r"generate an?\s+(\w+)", re.IGNORECASE)


def next_tier(kind: ProviderKind) -> Optional[ProviderKind]:
    idx = FALLBACK_ORDER.index(kind)
    if idx + 1 < len(FALLBACK_ORDER):
        return FALLBACK_ORDER[idx + 1]
    return None


def _message_content(data: Any, provider: str) -> str:
    if isinstance(data, dict) and data.get("error"):
        err = data["error"]
        msg = err.get("message") if isinstance(err, dict) else str(err)
        code = err.get("code") if isinstance(err, dict) else None
        if code in (401, 403):
            raise AuthenticationError(str(msg), provider)
        if code == 429:
            raise RateLimitError(str(msg), provider)
        raise ProviderResponseError(str(msg), provider)
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        raise ProviderResponseError("response has no choices[0].message.content", provider)
    if not isinstance(content, str) or not content.strip():
        raise ProviderResponseError("empty completion", provider)
    return content


async def _post_chat(
    url: str,
    payload: Dict[str, Any],
    headers: Dict[str, str],
    timeout: float,
    provider: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            resp = await client.post(url, json=payload, headers=headers)
    except httpx.TimeoutException as exc:
        raise ProviderTimeoutError(f"request timed out after {timeout:g}s ({exc.__class__.__name__})", provider)
    except httpx.HTTPError as exc:
        raise AvailabilityError(f"request failed: {exc}", provider)
    status = resp.status_code
    if status in (401, 403):
        raise AuthenticationError(f"HTTP {status}: {resp.text[:200]}", provider)
    if status == 429:
        raise RateLimitError(f"HTTP 429: {resp.text[:200]}", provider)
    if not resp.is_success:
        raise AvailabilityError(f"HTTP {status}: {resp.text[:200]}", provider)
    try:
        data = resp.json()
    except ValueError:
        raise ProviderResponseError("response body is not JSON", provider)
    return _message_content(data, provider)


class Provider:
    kind: ProviderKind

    def __init__(self, config: ConfigStore, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.transport = transport

    @property
    def status_timeout(self) -> float:
        return float(self.config.get("ai.statusTimeout", 2.0))

    async def is_available(self) -> bool:
        raise NotImplementedError

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        raise NotImplementedError


class CliProvider(Provider):
    kind = ProviderKind.CLI

    def _command(self) -> str:
        return str(self.config.get("ai.cli.command", "claude"))

    def build_argv(self) -> List[str]:
        argv = [self._command(), "-p"]
        model = self.config.get("ai.cli.model")
        if model:
            argv += ["--model", str(model)]
        argv += [str(a) for a in (self.config.get("ai.cli.extraArgs") or [])]
        return argv

    async def is_available(self) -> bool:
        task = await CliTask([self._command(), "--version"], timeout=self.status_timeout).run()
        return task.state is TaskState.SUCCEEDED

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        timeout = float(self.config.get("ai.cli.timeout", 60.0))
        task = await CliTask(self.build_argv(), stdin_text=with_output_contract(request.prompt), timeout=timeout).run()
        name = self.kind.value
        if task.state is TaskState.TIMED_OUT:
            raise ProviderTimeoutError(task.message, name)
        if task.state is not TaskState.SUCCEEDED:
            if task.reason is FailureReason.MISSING:
                raise AvailabilityError(task.message, name)
            if task.reason is FailureReason.AUTH:
                raise AuthenticationError(task.message, name)
            if task.reason is FailureReason.RATE_LIMIT:
                raise RateLimitError(task.message, name)
            raise ProviderResponseError(task.message or "command failed", name)
        model = self.config.get("ai.cli.model") or "default"
        return GenerationResult(
            content=task.output,
            source=SourceDescriptor(kind=self.kind, model=f"claude-{model}", endpoint="local"),
        )


class SelfHostedProvider(Provider):
    """OpenAI-compatible server on the local machine or network (LM Studio, llama.cpp, ...)."""

    kind = ProviderKind.SELF_HOSTED

    def _endpoint(self) -> str:
        return str(self.config.get("ai.selfHosted.endpoint", "")).rstrip("/")

    async def is_available(self) -> bool:
        endpoint = self._endpoint()
        if not endpoint:
            return False
        try:
            async with httpx.AsyncClient(timeout=self.status_timeout, transport=self.transport) as client:
                resp = await client.get(f"{endpoint}/v1/models")
        except httpx.HTTPError as exc:
            log.info("llm status provider=%s ok=false err=%s", self.kind.value, exc.__class__.__name__)
            return False
        return resp.is_success

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        endpoint = self._endpoint()
        if not endpoint:
            raise AvailabilityError("no endpoint configured", self.kind.value)
        model = self.config.get("ai.selfHosted.model")
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": SELF_HOSTED_SYSTEM_PROMPT},
                {"role": "user", "content": request.prompt},
            ],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "stream": False,
        }
        content = await _post_chat(
            f"{endpoint}/v1/chat/completions",
            payload,
            {"Content-Type": "application/json"},
            float(self.config.get("ai.requestTimeout", 120.0)),
            self.kind.value,
            self.transport,
        )
        return GenerationResult(
            content=content,
            source=SourceDescriptor(kind=self.kind, model=model, endpoint=endpoint),
        )


class HostedApiProvider(Provider):
    kind = ProviderKind.HOSTED_API

    def _key(self) -> str:
        return str(self.config.get("ai.hosted.key") or "").strip()

    async def is_available(self) -> bool:
        return bool(self._key())

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        key = self._key()
        if not key:
            raise AvailabilityError("no API key configured", self.kind.value)
        endpoint = str(self.config.get("ai.hosted.endpoint", "")).rstrip("/")
        model = self.config.get("ai.hosted.model")
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": CODE_ONLY_SYSTEM_PROMPT},
                {"role": "user", "content": with_output_contract(request.prompt)},
            ],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        headers = {
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
            "X-Title": "GEMS",
        }
        content = await _post_chat(
            f"{endpoint}/chat/completions",
            payload,
            headers,
            float(self.config.get("ai.requestTimeout", 120.0)),
            self.kind.value,
            self.transport,
        )
        return GenerationResult(
            content=content,
            source=SourceDescriptor(kind=self.kind, model=model, endpoint="OpenRouter"),
        )


def template_response(prompt: str) -> GenerationResult:
    """Deterministic placeholder; the last tier and the router's final guarantee."""
    m = _COMPONENT_NAME_RE.search(prompt or "") or _GENERATE_A_RE.search(prompt or "")
    name = m.group(1) if m else "custom"
    content = f"```javascript\n{default_component(name)}```\n"
    return GenerationResult(
        content=content,
        source=SourceDescriptor(kind=ProviderKind.TEMPLATE, model="Built-in Template"),
    )


class TemplateProvider(Provider):
    kind = ProviderKind.TEMPLATE

    async def is_available(self) -> bool:
        return True

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        return template_response(request.prompt)


def build_providers(
    config: ConfigStore, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Dict[ProviderKind, Provider]:
    return {
        cls.kind: cls(config, transport)
        for cls in (CliProvider, SelfHostedProvider, HostedApiProvider, TemplateProvider)
    }


class ProviderRouter:
    """Picks a tier and walks the fallback chain until something answers.

    ``generate`` never raises: when every tier fails the built-in template
    answers.
    """

    def __init__(
        self,
        config: Optional[ConfigStore] = None,
        providers: Optional[Dict[ProviderKind, Provider]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config if config is not None else ConfigStore()
        self.providers = providers if providers is not None else build_providers(self.config, transport)

    def default_kind(self) -> ProviderKind:
        raw = self.config.get("ai.defaultProvider", ProviderKind.SELF_HOSTED.value)
        try:
            return ProviderKind.parse(raw)
        except ValueError:
            log.warning("llm unknown default provider=%r; using self-hosted", raw)
            return ProviderKind.SELF_HOSTED

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        kind: Optional[ProviderKind] = request.provider or self.default_kind()
        attempted: List[ProviderKind] = []
        while kind is not None and kind not in attempted:
            attempted.append(kind)
            provider = self.providers.get(kind)
            if provider is None:
                kind = next_tier(kind)
                continue
            log.info("llm attempting provider=%s", kind.value)
            try:
                result = await provider.generate(request)
            except AuthenticationError as exc:
                log.warning("llm auth failed provider=%s err=%s", kind.value, exc)
                kind = AUTH_FALLBACK.get(kind, next_tier(kind))
                continue
            except ProviderError as exc:
                log.warning("llm failed provider=%s kind=%s err=%s", kind.value, exc.__class__.__name__, exc)
                kind = next_tier(kind)
                continue
            except Exception:
                log.exception("llm unexpected failure provider=%s", kind.value)
                kind = next_tier(kind)
                continue
            log.info("llm ok provider=%s model=%s", result.source.kind.value, result.source.model)
            return result
        log.warning("llm all tiers failed attempted=%s; serving template", [k.value for k in attempted])
        return template_response(request.prompt)

    async def status(self) -> Dict[str, Any]:
        tiers: Dict[str, bool] = {}
        for kind in FALLBACK_ORDER:
            provider = self.providers.get(kind)
            if provider is None:
                tiers[kind.value] = False
                continue
            try:
                tiers[kind.value] = await provider.is_available()
            except Exception:
                log.exception("llm status check crashed provider=%s", kind.value)
                tiers[kind.value] = False
        return {"default": self.default_kind().value, "providers": tiers}
