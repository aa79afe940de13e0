from __future__ import annotations
import logging, random, re
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Tuple
from urllib.parse import urlsplit

import yaml

from .errors import ConfigError

log = logging.getLogger(__name__)

MAC_RE      = re.compile(r"^[A-F0-9]{2}:[A-F0-9]{2}:[A-F0-9]{2}:[A-F0-9]{2}:[A-F0-9]{2}:[A-F0-9]{2}$")
TIMEZONE_RE = re.compile(r"^[a-zA-Z]+/[a-zA-Z]+$")
TOKEN_CHARS = "ABCDEF0123456789"
TOKEN_LEN   = 32

# ---------------------------------------------------------------------------

@dataclass
class PortalConfig:
    model: str = ""
    serial_number: str = ""
    device_id: str = ""
    device_id2: str = ""
    signature: str = ""
    mac: str = ""
    username: str = ""
    password: str = ""
    url: str = ""
    time_zone: str = ""
    token: str = ""
    watchdog: int = 0
    device_id_auth: bool = False
    # copied from a browser that solved the edge challenge
    user_agent: str = ""
    cookies: str = ""


@dataclass
class HLSConfig:
    enabled: bool = False
    bind: str = ""
    rewrite: bool = True


@dataclass
class ProxyConfig:
    enabled: bool = False
    bind: str = ""
    rewrite: bool = False


@dataclass
class AdminConfig:
    enabled: bool = False
    bind: str = ""


@dataclass
class Config:
    portal: PortalConfig = field(default_factory=PortalConfig)
    hls: HLSConfig = field(default_factory=HLSConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    admin: AdminConfig = field(default_factory=AdminConfig)

    def validate(self) -> "Config":
        """Check the configuration and fill in defaults, in place.

        Nothing here touches the network. Raises ConfigError on the first problem.
        """
        p = self.portal
        p.mac = (p.mac or "").upper()

        if not p.model:
            raise ConfigError("empty model")
        if not p.serial_number:
            raise ConfigError("empty serial number (sn)")
        if not p.device_id:
            raise ConfigError("empty device_id")
        if not p.device_id2:
            raise ConfigError("empty device_id2")
        # signature, username and password may be empty

        if not MAC_RE.match(p.mac):
            raise ConfigError(f"invalid MAC '{p.mac}'")

        if not p.url:
            raise ConfigError("empty portal url")
        p.url = normalise_portal_url(p.url)

        if not TIMEZONE_RE.match(p.time_zone or ""):
            raise ConfigError(f"invalid timezone '{p.time_zone}'")

        if not (self.hls.enabled or self.proxy.enabled or self.admin.enabled):
            raise ConfigError("no services enabled")
        if self.hls.enabled and not self.hls.bind:
            raise ConfigError("empty HLS bind")
        if self.proxy.enabled and not self.proxy.bind:
            raise ConfigError("empty proxy bind")
        if self.admin.enabled and not self.admin.bind:
            raise ConfigError("empty admin bind")
        if self.proxy.rewrite and not self.hls.enabled:
            raise ConfigError("HLS service must be enabled for 'proxy: rewrite'")

        if not p.token:
            p.token = random_token()
            log.info("No token given, using random one: %s", p.token)

        if p.watchdog == 1:
            p.watchdog = 2
            log.info("Using Watchdog update interval = %s", p.watchdog)
        return self


def normalise_portal_url(raw: str) -> str:
    """Accept bare hosts (``portal.example``) by giving them a scheme. The path is kept as-is."""
    u = raw.strip()
    if not u:
        raise ConfigError("empty portal url")
    if "://" not in u:
        u = "https://" + u
    try:
        parts = urlsplit(u)
    except ValueError as exc:
        raise ConfigError(f"invalid portal url: {exc}") from exc
    if not parts.netloc:
        raise ConfigError("invalid portal url: missing host")
    return u


def random_token() -> str:
    return "".join(random.choice(TOKEN_CHARS) for _ in range(TOKEN_LEN))


def parse_bind(bind: str) -> Tuple[str, int]:
    host, _, port = bind.rpartition(":")
    if not port.isdigit():
        raise ConfigError(f"invalid bind address '{bind}'")
    return host or "0.0.0.0", int(port)

# ---------------------------------------------------------------------------

def _section(cls, raw: Any):
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"section for {cls.__name__} must be a mapping")
    types = {f.name: f.type for f in fields(cls)}
    unknown = set(raw) - set(types)
    if unknown:
        log.warning("Ignoring unknown config keys: %s", ", ".join(sorted(map(str, unknown))))
    values = {}
    for k, v in raw.items():
        if k not in types:
            continue
        # YAML reads serials like 0123 as ints
        if types[k] == "str" and v is not None and not isinstance(v, str):
            v = str(v)
        values[k] = "" if v is None and types[k] == "str" else v
    return cls(**values)


def from_dict(data: Dict[str, Any]) -> Config:
    return Config(
        portal=_section(PortalConfig, data.get("portal")),
        hls=_section(HLSConfig, data.get("hls")),
        proxy=_section(ProxyConfig, data.get("proxy")),
        admin=_section(AdminConfig, data.get("admin")),
    )


def load_config(path: str) -> Config:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return from_dict(data).validate()
