from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover
    import toml as tomllib  # type: ignore


CONFIG_DIR = Path(__file__).resolve().parents[2] / "config"
PROFILE_DIR = CONFIG_DIR / "profiles"
DEFAULT_BASE_CONFIG = CONFIG_DIR / "base.toml"
DEFAULT_MANIFEST_DIR = Path(__file__).resolve().parents[2] / "site_manifest"
MANIFEST_ENV_VAR = "SHOPFLOW_MANIFEST_DIR"


class SettingsLoadError(RuntimeError):
    pass


def _load_toml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise SettingsLoadError(f"Config file not found: {path}")
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:
        raise SettingsLoadError(f"Config file {path} is not valid TOML: {exc}") from exc
    if not isinstance(data, dict):
        raise SettingsLoadError(f"Config file {path} did not produce a dictionary")
    return data


def _merge_dicts(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_dicts(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _expand_env(data: Any) -> Any:
    if isinstance(data, str):
        return os.path.expandvars(data)
    if isinstance(data, dict):
        return {k: _expand_env(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_expand_env(v) for v in data]
    return data


_PATH_FIELDS: Tuple[Tuple[str, ...], ...] = (
    ("basic", "save_file_dir"),
    ("runner", "events_dir"),
    ("manifest", "dir"),
)


def _resolve_paths(config: Dict[str, Any], base_dir: Path) -> Dict[str, Any]:
    cfg = copy.deepcopy(config)
    for keys in _PATH_FIELDS:
        container = cfg
        for key in keys[:-1]:
            if not isinstance(container, dict):
                container = None
                break
            container = container.get(key)
        if not isinstance(container, dict):
            continue
        leaf = keys[-1]
        value = container.get(leaf)
        if isinstance(value, str) and value:
            path = Path(os.path.expanduser(value))
            if not path.is_absolute():
                path = (base_dir / path).resolve()
            container[leaf] = str(path)
    return cfg


def load_settings(
    config_path: Path | None = None,
    profiles: Sequence[str] | None = None,
) -> Tuple[Dict[str, Any], Path]:
    """Load configuration as a merged dictionary and return with its base directory."""

    if config_path is not None:
        base_path = Path(config_path).resolve()
    else:
        base_path = DEFAULT_BASE_CONFIG
    base_dir = base_path.parent
    config = _load_toml(base_path)

    for profile in profiles or []:
        profile_path = PROFILE_DIR / f"{profile}.toml"
        config = _merge_dicts(config, _load_toml(profile_path))

    config = _expand_env(config)
    config = _resolve_paths(config, base_dir)
    manifest_cfg = config.setdefault("manifest", {})
    manifest_dir_value = os.getenv(MANIFEST_ENV_VAR) or manifest_cfg.get("dir")
    if manifest_dir_value:
        manifest_dir = Path(str(manifest_dir_value)).expanduser()
        if not manifest_dir.is_absolute():
            manifest_dir = (base_dir / manifest_dir).resolve()
    else:
        manifest_dir = DEFAULT_MANIFEST_DIR
    manifest_cfg["dir"] = str(manifest_dir)
    config.setdefault("__meta", {})["config_dir"] = str(base_dir)
    config["__meta"]["config_path"] = str(base_path)
    if profiles:
        config["__meta"]["profiles"] = list(profiles)
    return config, base_dir


@dataclass
class FlowConfig:
    website: str
    search_query: str
    brand_tokens: List[str]
    identifier: str
    step_timeout_ms: int = 30000
    product_timeout_ms: int = 60000
    new_context_timeout_ms: int = 30000
    overlay_settle_ms: int = 500
    network_quiet_ms: int = 500
    deadline_sec: Optional[float] = None


@dataclass
class BrowserConfig:
    headless: bool = False
    slow_mo: int = 100
    viewport: Dict[str, int] = field(default_factory=lambda: {"width": 1366, "height": 768})
    locale: Optional[str] = None
    tracing: bool = False
    args: List[str] = field(default_factory=list)


def _unexpanded(value: str) -> bool:
    # os.path.expandvars leaves unknown ${VARS} in place
    return "${" in value or value.startswith("$")


def build_flow_config(settings: Dict[str, Any], overrides: Optional[Dict[str, Any]] = None) -> FlowConfig:
    basic_cfg = settings.get("basic", {}) or {}
    flow_cfg = dict(settings.get("flow", {}) or {})
    flow_cfg.update({k: v for k, v in (overrides or {}).items() if v not in (None, "", [])})

    website = flow_cfg.get("website") or basic_cfg.get("default_website") or ""
    if not website:
        raise SettingsLoadError("No website configured. Set basic.default_website or pass --website.")
    identifier = str(flow_cfg.get("identifier") or "")
    if _unexpanded(identifier):
        identifier = ""
    brand_tokens = flow_cfg.get("brand_tokens") or []
    if isinstance(brand_tokens, str):
        brand_tokens = [brand_tokens]
    deadline_sec = float(flow_cfg.get("deadline_sec", 0) or 0) or None
    return FlowConfig(
        website=website,
        search_query=str(flow_cfg.get("search_query") or basic_cfg.get("default_task") or ""),
        brand_tokens=[str(t) for t in brand_tokens],
        identifier=identifier,
        step_timeout_ms=int(flow_cfg.get("step_timeout_ms", 30000)),
        product_timeout_ms=int(flow_cfg.get("product_timeout_ms", 60000)),
        new_context_timeout_ms=int(flow_cfg.get("new_context_timeout_ms", 30000)),
        overlay_settle_ms=int(flow_cfg.get("overlay_settle_ms", 500)),
        network_quiet_ms=int(flow_cfg.get("network_quiet_ms", 500)),
        deadline_sec=deadline_sec,
    )


def build_browser_config(settings: Dict[str, Any], headless: Optional[bool] = None) -> BrowserConfig:
    pw = settings.get("playwright", {}) or {}
    viewport = pw.get("viewport") or {}
    if not isinstance(viewport, dict):
        viewport = {}
    return BrowserConfig(
        headless=bool(pw.get("headless", False)) if headless is None else headless,
        slow_mo=int(pw.get("slow_mo", 100)),
        viewport={"width": int(viewport.get("width", 1366)), "height": int(viewport.get("height", 768))},
        locale=pw.get("locale"),
        tracing=bool(pw.get("tracing", False)),
        args=list(pw.get("args") or []),
    )


__all__ = [
    "load_settings",
    "build_flow_config",
    "build_browser_config",
    "FlowConfig",
    "BrowserConfig",
    "SettingsLoadError",
    "DEFAULT_BASE_CONFIG",
    "PROFILE_DIR",
]
