"""
Typed view of a Clash configuration document.

Only the fields this tool reads or rewrites are modelled explicitly; everything
else (DNS, experimental blocks, proxy-specific options, ...) is carried through
untouched as pydantic extras so derived instance configs stay faithful to the
base document.

Clash has shipped two spellings for the top-level collections:

    legacy:  Proxy / Proxy Group / Rule
    modern:  proxies / proxy-groups / rules

Either is accepted on input and derived documents are written back in the
spelling of the base config.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ConfigError

LOGGER = logging.getLogger("ClashFleet.Schema")

LEGACY_KEYS = {"proxies": "Proxy", "proxy_groups": "Proxy Group", "rules": "Rule"}
MODERN_KEYS = {"proxies": "proxies", "proxy_groups": "proxy-groups", "rules": "rules"}

_OPTIONAL_FIELDS = (
    "port",
    "socks_port",
    "redir_port",
    "allow_lan",
    "external_controller",
)


class ProxyDescriptor(BaseModel):
    """One upstream proxy entry. Only `name` is interpreted."""

    model_config = ConfigDict(extra="allow", frozen=True)

    name: str = Field(min_length=1)


class ClashConfig(BaseModel):
    """Validated base configuration. Never mutated after loading."""

    model_config = ConfigDict(extra="allow", frozen=True, populate_by_name=True)

    key_style: Literal["legacy", "modern"] = Field(default="modern", exclude=True)
    proxies: List[ProxyDescriptor]
    proxy_groups: List[Dict[str, Any]] = Field(default_factory=list)
    rules: List[str] = Field(default_factory=list)
    port: int | None = None
    socks_port: int | None = Field(default=None, alias="socks-port")
    redir_port: int | None = Field(default=None, alias="redir-port")
    allow_lan: bool | None = Field(default=None, alias="allow-lan")
    external_controller: str | None = Field(default=None, alias="external-controller")

    @model_validator(mode="before")
    @classmethod
    def _normalize_collection_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        legacy = any(key in data for key in LEGACY_KEYS.values())
        modern = any(key in data for key in MODERN_KEYS.values())
        if legacy and modern:
            raise ValueError(
                "mixes legacy ('Proxy', 'Proxy Group', 'Rule') and modern "
                "('proxies', 'proxy-groups', 'rules') keys"
            )
        keys = LEGACY_KEYS if legacy else MODERN_KEYS
        for field_name, key in keys.items():
            if key in data:
                value = data.pop(key)
                # An empty YAML section loads as None.
                data[field_name] = [] if value is None else value
        data["key_style"] = "legacy" if legacy else "modern"
        return data

    @model_validator(mode="after")
    def _check_unique_proxy_names(self) -> "ClashConfig":
        seen: set[str] = set()
        for proxy in self.proxies:
            if proxy.name in seen:
                raise ValueError(f"duplicate proxy name {proxy.name!r}")
            seen.add(proxy.name)
        return self

    def collection_key(self, field_name: str) -> str:
        keys = LEGACY_KEYS if self.key_style == "legacy" else MODERN_KEYS
        return keys[field_name]

    def to_document(self) -> Dict[str, Any]:
        """Plain mapping in the key style of the source document."""

        unset = {name for name in _OPTIONAL_FIELDS if getattr(self, name) is None}
        data = self.model_dump(by_alias=True, exclude=unset)
        for field_name in LEGACY_KEYS:
            data[self.collection_key(field_name)] = data.pop(field_name)
        return data


def parse_config(raw: Any, *, path: Path | None = None) -> ClashConfig:
    if not isinstance(raw, dict):
        raise ConfigError(path, "top-level document must be a mapping")
    try:
        return ClashConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(path, f"invalid Clash configuration: {exc}") from exc


def load_base_config(path: Path) -> ClashConfig:
    """Read and validate the base Clash configuration at `path`."""

    if not path.exists():
        raise ConfigError(path, "configuration file does not exist")
    if not path.is_file():
        raise ConfigError(path, "configuration path is not a file")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(path, f"cannot read configuration: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(path, f"cannot parse YAML: {exc}") from exc

    config = parse_config(raw, path=path)
    LOGGER.info(
        "Loaded %s proxies and %s rules from %s (%s keys)",
        len(config.proxies),
        len(config.rules),
        path,
        config.key_style,
    )
    return config


def dump_document(document: Dict[str, Any]) -> str:
    return yaml.safe_dump(document, allow_unicode=True, sort_keys=False)
