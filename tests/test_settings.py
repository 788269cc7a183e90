import sys
from pathlib import Path

import pytest

repo_root = Path(__file__).resolve().parents[1]
src_dir = repo_root / "src"
if str(src_dir) not in sys.path:
    sys.path.insert(0, str(src_dir))

from shopflow.settings import (
    SettingsLoadError,
    build_browser_config,
    build_flow_config,
    load_settings,
)


def test_default_config_loads_with_resolved_paths(monkeypatch):
    monkeypatch.delenv("SHOPFLOW_MANIFEST_DIR", raising=False)
    monkeypatch.setenv("SHOPFLOW_IDENTIFIER", "9876543210")

    settings, base_dir = load_settings()

    assert base_dir == repo_root / "config"
    assert Path(settings["manifest"]["dir"]) == (repo_root / "site_manifest").resolve()
    assert Path(settings["basic"]["save_file_dir"]).is_absolute()
    assert settings["__meta"]["config_path"].endswith("base.toml")
    flow = build_flow_config(settings)
    assert flow.website == "https://www.amazon.in/"
    assert flow.search_query == "boat headphones"
    assert flow.brand_tokens == ["boAt"]
    assert flow.identifier == "9876543210"
    assert flow.deadline_sec is None


def test_unset_identifier_env_is_treated_as_missing(monkeypatch):
    monkeypatch.delenv("SHOPFLOW_IDENTIFIER", raising=False)

    settings, _ = load_settings()

    assert build_flow_config(settings).identifier == ""


def test_profile_overrides_playwright_section():
    settings, _ = load_settings(profiles=["headless"])

    browser = build_browser_config(settings)
    assert browser.headless is True
    assert browser.slow_mo == 0
    assert browser.viewport == {"width": 1366, "height": 768}
    assert settings["__meta"]["profiles"] == ["headless"]


def test_custom_config_and_env_manifest_dir(tmp_path, monkeypatch):
    manifests = tmp_path / "manifests"
    manifests.mkdir()
    monkeypatch.setenv("SHOPFLOW_MANIFEST_DIR", str(manifests))
    cfg = tmp_path / "cfg.toml"
    cfg.write_text(
        '[basic]\nsave_file_dir = "out"\ndefault_website = "https://shop.example/"\n'
        '[flow]\nsearch_query = "usb cable"\nbrand_tokens = "acme"\ndeadline_sec = 90\n',
        encoding="utf-8",
    )

    settings, base_dir = load_settings(config_path=cfg)

    assert base_dir == tmp_path.resolve()
    assert settings["basic"]["save_file_dir"] == str((tmp_path / "out").resolve())
    assert settings["manifest"]["dir"] == str(manifests)
    flow = build_flow_config(settings)
    assert flow.brand_tokens == ["acme"]
    assert flow.deadline_sec == 90.0
    browser = build_browser_config(settings, headless=True)
    assert browser.headless is True
    assert browser.slow_mo == 100


def test_overrides_win_over_config():
    settings = {"basic": {"default_website": "https://www.amazon.in/"}, "flow": {"search_query": "boat headphones"}}

    flow = build_flow_config(settings, {"search_query": "earbuds", "brand_tokens": ["noise"], "identifier": None})

    assert flow.search_query == "earbuds"
    assert flow.brand_tokens == ["noise"]
    assert flow.identifier == ""


def test_missing_website_raises():
    with pytest.raises(SettingsLoadError):
        build_flow_config({"basic": {}})


def test_missing_or_invalid_file(tmp_path):
    with pytest.raises(SettingsLoadError):
        load_settings(config_path=tmp_path / "nope.toml")
    bad = tmp_path / "bad.toml"
    bad.write_text("[basic\n", encoding="utf-8")
    with pytest.raises(SettingsLoadError):
        load_settings(config_path=bad)
