"""Configuration loading for sitepipe (.target.yml, config.yml, works/<site>/config.yml)."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml

TARGET_FILE = ".target.yml"
CONFIG_FILE = "config.yml"
SITE_CONFIG_FILE = "config.yml"

DEFAULT_PORT = 9000
DEFAULT_DIST_ROOT = "dist"
DEFAULT_WORKS_DIR = "works"
DEFAULT_VENDOR_ROOT = "node_modules"
DEFAULT_WATCH_INTERVAL = 0.5
DEFAULT_WATCH_DELAY = 0.2
DEFAULT_ASSET_DELAY = 3.0
DEFAULT_MAX_WORKERS = 4

_PRODUCTION_VALUES = {"prod", "production"}
_ENV_KEYS = ("SITEPIPE_ENV", "NODE_ENV")
_VENDOR_CLASSES = ("fonts", "styles", "scripts")
_PLACEHOLDER = re.compile(r"{\w+}")

# Field names used by older configuration generations, mapped to their current name.
_FIELD_ALIASES = {
    "siteName": "site",
    "work": "site",
    "target": "site",
    "proxyServer": "proxy_server",
    "distRoot": "dist_root",
    "vendorRoot": "vendor_root",
    "worksDir": "works_dir",
}

_DEFAULTS: Dict[str, Any] = {
    "production": False,
    "proxy": False,
    "beautify": False,
    "port": DEFAULT_PORT,
    "dist_root": DEFAULT_DIST_ROOT,
    "works_dir": DEFAULT_WORKS_DIR,
    "vendor_root": DEFAULT_VENDOR_ROOT,
    "proxy_server": {},
    "vendors": {},
    "transforms": {},
    "watch": {},
    "max_workers": DEFAULT_MAX_WORKERS,
    "strict": False,
}


class ConfigError(RuntimeError):
    """Raised when a required descriptor is missing or invalid."""


@dataclass(frozen=True)
class ConfigSource:
    """One layer of configuration; later layers override earlier ones."""

    name: str
    data: Mapping[str, Any]


@dataclass(frozen=True)
class VendorSpec:
    """Library paths a vendor contributes per asset class."""

    name: str
    fonts: Tuple[str, ...] = ()
    styles: Tuple[str, ...] = ()
    scripts: Tuple[str, ...] = ()

    def paths_for(self, asset_class: str) -> Tuple[str, ...]:
        return getattr(self, asset_class, ())


@dataclass(frozen=True)
class ProxySettings:
    """Proxy server settings; only path and URL resolution are handled."""

    enabled: bool = False
    url_pattern: Optional[str] = None
    root_path: Optional[str] = None

    def url_for(self, site: str) -> Optional[str]:
        if not self.url_pattern:
            return None
        return _PLACEHOLDER.sub(site, self.url_pattern, count=1)


@dataclass(frozen=True)
class WatchSettings:
    """Polling interval and debounce windows for the watch loop."""

    interval: float = DEFAULT_WATCH_INTERVAL
    delay: float = DEFAULT_WATCH_DELAY
    asset_delay: float = DEFAULT_ASSET_DELAY


@dataclass(frozen=True)
class SiteDescriptor:
    """Per-site asset entries and enabled vendors (works/<site>/config.yml)."""

    name: str
    root: Path
    styles: Tuple[str, ...] = ()
    scripts: Tuple[str, ...] = ()
    vendors: Tuple[str, ...] = ()


@dataclass(frozen=True)
class BuildConfig:
    """Resolved, immutable settings for one build session."""

    project_root: Path
    target: str
    site: SiteDescriptor
    output_root: Path
    production: bool = False
    beautify: bool = False
    proxy: ProxySettings = field(default_factory=ProxySettings)
    vendor_root: Path = Path(DEFAULT_VENDOR_ROOT)
    vendors: Tuple[VendorSpec, ...] = ()
    port: int = DEFAULT_PORT
    watch: WatchSettings = field(default_factory=WatchSettings)
    max_workers: int = DEFAULT_MAX_WORKERS
    commands: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()
    strict: Tuple[str, ...] = ()

    @property
    def source_maps(self) -> bool:
        return not self.production

    @property
    def proxy_url(self) -> Optional[str]:
        if not self.proxy.enabled:
            return None
        return self.proxy.url_for(self.target)

    def vendor(self, name: str) -> Optional[VendorSpec]:
        for spec in self.vendors:
            if spec.name == name:
                return spec
        return None

    def command(self, name: str) -> Optional[Tuple[str, ...]]:
        for key, argv in self.commands:
            if key == name:
                return argv
        return None

    def is_strict(self, unit_key: str) -> bool:
        """True when a transform failure in ``unit_key`` must fail the whole unit."""
        return "*" in self.strict or unit_key in self.strict


def load_config(
    project_root: Path,
    *,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> BuildConfig:
    """Load every configuration layer under ``project_root`` and resolve them."""
    root = project_root.expanduser().resolve()
    sources = load_sources(root, overrides=overrides, environ=environ)
    return resolve(sources, project_root=root)


def resolve_works_dir(project_root: Path, *, environ: Optional[Mapping[str, str]] = None) -> Path:
    """Directory holding the sites, without loading any site descriptor."""
    root = project_root.expanduser().resolve()
    data = merge_sources(load_sources(root, environ=environ))
    return root / (_as_str(data.get("works_dir")) or DEFAULT_WORKS_DIR)


def load_sources(
    project_root: Path,
    *,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> List[ConfigSource]:
    """Return the configuration layers in increasing priority."""
    sources = [ConfigSource("defaults", _DEFAULTS)]
    sources.append(ConfigSource(CONFIG_FILE, _read_required(project_root / CONFIG_FILE)))
    sources.append(ConfigSource(TARGET_FILE, _read_required(project_root / TARGET_FILE)))

    env = os.environ if environ is None else environ
    for key in _ENV_KEYS:
        value = env.get(key)
        if value:
            production = value.strip().lower() in _PRODUCTION_VALUES
            sources.append(ConfigSource(f"env:{key}", {"production": production}))
            break

    if overrides:
        cleaned = {key: value for key, value in overrides.items() if value is not None}
        if cleaned:
            sources.append(ConfigSource("cli", cleaned))
    return sources


def merge_sources(sources: Sequence[ConfigSource]) -> Dict[str, Any]:
    """Shallow key-by-key merge; later layers replace earlier values wholesale."""
    merged: Dict[str, Any] = {}
    for source in sources:
        merged.update(_normalise_keys(source.data))
    return merged


def resolve(sources: Sequence[ConfigSource], *, project_root: Path) -> BuildConfig:
    """Merge configuration layers into a BuildConfig and load the site descriptor."""
    data = merge_sources(sources)

    target = _as_str(data.get("site"))
    if not target:
        raise ConfigError(f"{TARGET_FILE} must define the target site name (siteName)")
    if "/" in target or "\\" in target or target in {".", ".."}:
        raise ConfigError(f"Invalid site name: {target!r}")

    works_dir = project_root / (_as_str(data.get("works_dir")) or DEFAULT_WORKS_DIR)
    site = load_site(works_dir / target, name=target)

    vendors = _parse_vendors(_as_dict(data.get("vendors")))
    known = {vendor.name for vendor in vendors}
    missing = [name for name in site.vendors if name not in known]
    if missing:
        raise ConfigError(f"Site '{target}' enables unknown vendors: {', '.join(missing)}")

    proxy_data = _as_dict(data.get("proxy_server"))
    proxy = ProxySettings(
        enabled=bool(_as_bool(data.get("proxy"))),
        url_pattern=_as_str(proxy_data.get("urlPattern") or proxy_data.get("url_pattern")),
        root_path=_as_str(proxy_data.get("rootPath") or proxy_data.get("root_path")),
    )

    if proxy.enabled:
        if not proxy.root_path:
            raise ConfigError("proxy is enabled but proxyServer.rootPath is not set")
        output_root = _under(project_root, proxy.root_path) / target / "static"
    else:
        dist_root = _as_str(data.get("dist_root")) or DEFAULT_DIST_ROOT
        output_root = _under(project_root, dist_root) / target

    watch_data = _as_dict(data.get("watch"))
    watch = WatchSettings(
        interval=_as_float(watch_data.get("interval"), DEFAULT_WATCH_INTERVAL),
        delay=_as_float(watch_data.get("delay"), DEFAULT_WATCH_DELAY),
        asset_delay=_as_float(watch_data.get("asset_delay"), DEFAULT_ASSET_DELAY),
    )

    commands: List[Tuple[str, Tuple[str, ...]]] = []
    for name, argv in sorted(_as_dict(data.get("transforms")).items()):
        parts = tuple(_as_str_list(argv))
        if not parts:
            raise ConfigError(f"Transform command for '{name}' must be a non-empty list")
        commands.append((str(name), parts))

    return BuildConfig(
        project_root=project_root,
        target=target,
        site=site,
        output_root=output_root,
        production=bool(_as_bool(data.get("production"))),
        beautify=bool(_as_bool(data.get("beautify"))),
        proxy=proxy,
        vendor_root=_under(project_root, _as_str(data.get("vendor_root")) or DEFAULT_VENDOR_ROOT),
        vendors=vendors,
        port=_as_int(data.get("port")) or DEFAULT_PORT,
        watch=watch,
        max_workers=max(1, _as_int(data.get("max_workers")) or DEFAULT_MAX_WORKERS),
        commands=tuple(commands),
        strict=_parse_strict(data.get("strict")),
    )


def load_site(site_root: Path, *, name: str) -> SiteDescriptor:
    """Read works/<site>/config.yml into a SiteDescriptor."""
    data = _read_required(site_root / SITE_CONFIG_FILE)
    return SiteDescriptor(
        name=name,
        root=site_root,
        styles=tuple(_as_str_list(data.get("styles"))),
        scripts=tuple(_as_str_list(data.get("scripts"))),
        vendors=tuple(_as_str_list(data.get("vendors"))),
    )


def _read_required(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        raise ConfigError(f"Required configuration file is missing: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Failed to read {path}: {exc}") from exc
    if not text.strip():
        return {}
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {path}: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"{path} must contain a mapping at the root")
    return loaded


def _normalise_keys(data: Mapping[str, Any]) -> Dict[str, Any]:
    return {_FIELD_ALIASES.get(str(key), str(key)): value for key, value in data.items()}


def _parse_vendors(data: Mapping[str, Any]) -> Tuple[VendorSpec, ...]:
    vendors: List[VendorSpec] = []
    for name, raw in data.items():
        entry = _as_dict(raw)
        paths = {cls: tuple(_as_str_list(entry.get(cls))) for cls in _VENDOR_CLASSES}
        vendors.append(VendorSpec(name=str(name), **paths))
    return tuple(vendors)


def _parse_strict(value: Any) -> Tuple[str, ...]:
    flag = _as_bool(value)
    if flag is not None:
        return ("*",) if flag else ()
    return tuple(_as_str_list(value))


def _under(root: Path, value: str) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else root / path


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    return str(value) if isinstance(value, (str, int, float)) else None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def _as_float(value: Any, default: float) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return default
    return default


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1"}:
            return True
        if lowered in {"false", "no", "0"}:
            return False
    return None


def _as_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, Sequence):
        return [str(item) for item in value if isinstance(item, (str, int, float))]
    return []


__all__ = [
    "BuildConfig",
    "ConfigError",
    "ConfigSource",
    "ProxySettings",
    "SiteDescriptor",
    "VendorSpec",
    "WatchSettings",
    "load_config",
    "load_site",
    "load_sources",
    "merge_sources",
    "resolve",
    "resolve_works_dir",
]
