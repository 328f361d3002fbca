import json

import pytest

from gems.config import ConfigStore
from gems.models import ProviderKind


def test_defaults_in_memory():
    cfg = ConfigStore()
    assert cfg.get("ai.defaultProvider") == "self-hosted"
    assert cfg.get("ai.cli.timeout") == 60.0
    assert cfg.get("ai.selfHosted.model") == "mistralai/devstral-small-2505"
    assert cfg.get("output.directory") == "./generated"
    assert cfg.get("ai.nope.missing", "fallback") == "fallback"


def test_set_persists_and_reloads(tmp_path):
    path = tmp_path / "nested" / "config.json"
    cfg = ConfigStore(path)
    cfg.set("ai.selfHosted.endpoint", "http://gpu-box:1234")
    cfg.set("preview.port", 4000)

    on_disk = json.loads(path.read_text())
    assert on_disk["ai"]["selfHosted"]["endpoint"] == "http://gpu-box:1234"
    assert not (tmp_path / "nested" / "config.json.tmp").exists()

    again = ConfigStore(path)
    assert again.get("ai.selfHosted.endpoint") == "http://gpu-box:1234"
    assert again.get("preview.port") == 4000
    # untouched defaults are merged back in
    assert again.get("ai.selfHosted.model") == "mistralai/devstral-small-2505"


def test_corrupt_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")
    assert ConfigStore(path).get("ai.defaultProvider") == "self-hosted"


def test_empty_values_fall_back_to_environment(monkeypatch):
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-from-env")
    cfg = ConfigStore()
    assert cfg.get("ai.hosted.key") == "sk-from-env"
    cfg.set("ai.hosted.key", "sk-explicit")
    assert cfg.get("ai.hosted.key") == "sk-explicit"


def test_get_returns_copies():
    cfg = ConfigStore()
    args = cfg.get("ai.cli.extraArgs")
    args.append("--evil")
    assert cfg.get("ai.cli.extraArgs") == ["--dangerously-skip-permissions"]


def test_reset(tmp_path):
    cfg = ConfigStore(tmp_path / "config.json", overrides={"ai.temperature": 0.1})
    assert cfg.get("ai.temperature") == 0.1
    cfg.reset()
    assert cfg.get("ai.temperature") == 0.7


@pytest.mark.parametrize(
    "raw, kind",
    [
        ("claude-code", ProviderKind.CLI),
        ("local", ProviderKind.SELF_HOSTED),
        ("cloud", ProviderKind.HOSTED_API),
        ("Hosted-API", ProviderKind.HOSTED_API),
        ("template", ProviderKind.TEMPLATE),
    ],
)
def test_provider_aliases(raw, kind):
    assert ProviderKind.parse(raw) is kind


def test_unknown_provider_is_rejected():
    with pytest.raises(ValueError):
        ProviderKind.parse("carrier-pigeon")
