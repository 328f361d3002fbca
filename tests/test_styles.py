import os

import pytest

from gems.config import ConfigStore
from gems.errors import PresetNotFoundError
from gems.styles import StylePresetStore, default_styles_dir, sanitize_preset_name


def _styles(tmp_path, **overrides):
    config = ConfigStore(tmp_path / "config.json", overrides=overrides or None)
    return StylePresetStore.from_config(config), config


def test_styles_live_next_to_the_config(tmp_path):
    store, _ = _styles(tmp_path)
    assert store.directory == tmp_path / "styles"
    assert default_styles_dir(ConfigStore(overrides={"styles.directory": str(tmp_path / "x")})) == tmp_path / "x"


def test_sanitize_preset_name():
    assert sanitize_preset_name("Acme Corp!! Brand") == "acme-corp-brand"
    assert sanitize_preset_name("../../etc/passwd") == "etcpasswd"
    assert len(sanitize_preset_name("y" * 80)) == 50


def test_create_adds_heading_and_lists_newest_first(tmp_path):
    store, _ = _styles(tmp_path)
    first = store.create_style("Acme Corp", "Use navy and gold.")
    second = store.create_style("Night Mode", "# Night Mode\n\nDark surfaces, neon accents.")
    os.utime(store.directory / first, (1000, 1000))

    assert first == "acme-corp.md"
    assert store.get_style_content(first) == "# Acme Corp\n\nUse navy and gold."
    presets = store.list_styles()
    assert [p.filename for p in presets] == [second, first]
    assert presets[0].name == "Night Mode"
    assert presets[0].description == "Dark surfaces, neon accents."


def test_template_file_is_hidden_and_protected(tmp_path):
    store, _ = _styles(tmp_path)
    store.directory.mkdir()
    (store.directory / "STYLE_TEMPLATE.md").write_text("# Template\n")
    assert store.list_styles() == []
    with pytest.raises(ValueError):
        store.delete_style("STYLE_TEMPLATE.md")


def test_active_preset_needs_styles_enabled(tmp_path):
    store, _ = _styles(tmp_path)
    filename = store.create_style("Acme", "Rounded corners everywhere.")
    store.set_active_style(filename)
    assert store.active_style_content() is None

    store.set_enabled(True)
    assert "Rounded corners" in store.active_style_content()
    # persisted through the config file
    assert ConfigStore(tmp_path / "config.json").get("styles.activePreset") == filename


def test_activating_a_missing_preset_fails(tmp_path):
    store, _ = _styles(tmp_path)
    with pytest.raises(PresetNotFoundError):
        store.set_active_style("nope.md")
    with pytest.raises(ValueError):
        store.set_active_style("../config.json")


def test_deleting_the_active_preset_clears_it(tmp_path):
    store, config = _styles(tmp_path, **{"styles.enabled": True})
    filename = store.create_style("Acme", "Serif headings.")
    store.set_active_style(filename)
    store.delete_style(filename)
    assert config.get("styles.activePreset") is None
    assert store.active_style_content() is None
    with pytest.raises(PresetNotFoundError):
        store.delete_style(filename)


def test_vanished_active_preset_is_ignored(tmp_path):
    store, _ = _styles(tmp_path, **{"styles.enabled": True, "styles.activePreset": "gone.md"})
    assert store.active_style_content() is None
