"""
Selectors and overlay rules for one commerce site, read from its manifest.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from shopflow.Exceptions import ManifestError
from shopflow.utils.manifest_loader import ManifestRecord, load_manifest

_REQUIRED = (
    "home_ready",
    "search_box",
    "search_results",
    "result_links",
    "product_title",
    "purchase_entry",
    "identifier_fields",
    "password_prompt",
    "verification_prompt",
)


def _as_tuple(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value or ())


@dataclass(frozen=True)
class SiteProfile:
    domain: str
    home_ready: str
    search_box: str
    search_results: str
    result_links: Tuple[str, ...]
    product_title: str
    purchase_entry: str
    identifier_fields: Tuple[str, ...]
    password_prompt: str
    verification_prompt: str
    overlays: Tuple[Dict[str, Any], ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, domain: str, selectors: Dict[str, Any], overlays: List[Dict[str, Any]] = ()) -> "SiteProfile":
        missing = [key for key in _REQUIRED if not selectors.get(key)]
        if missing:
            raise ManifestError(f"Manifest for {domain} is missing selectors: {', '.join(missing)}")
        return cls(
            domain=domain,
            home_ready=selectors["home_ready"],
            search_box=selectors["search_box"],
            search_results=selectors["search_results"],
            result_links=_as_tuple(selectors["result_links"]),
            product_title=selectors["product_title"],
            purchase_entry=selectors["purchase_entry"],
            identifier_fields=_as_tuple(selectors["identifier_fields"]),
            password_prompt=selectors["password_prompt"],
            verification_prompt=selectors["verification_prompt"],
            overlays=tuple(overlays),
        )

    @classmethod
    def from_manifest(cls, record: ManifestRecord) -> "SiteProfile":
        return cls.from_dict(record.domain, record.selectors, record.overlays)


def resolve_profile(website: str, manifest_dir) -> SiteProfile:
    """Load the site profile for ``website`` from ``manifest_dir``."""
    record = load_manifest(website, str(manifest_dir))
    if record is None:
        raise ManifestError(f"No site manifest for {website} in {manifest_dir}")
    return SiteProfile.from_manifest(record)
