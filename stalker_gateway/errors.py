from __future__ import annotations


class StalkerError(Exception):
    """Base class for everything this package raises on purpose."""


class ConfigError(StalkerError):
    pass


class UpstreamError(StalkerError):
    """Upstream answered with a status that is neither 2xx nor 3xx."""

    def __init__(self, url: str, status: str):
        super().__init__(f"{url} returned HTTP code {status}")
        self.url = url
        self.status = status


class RedirectLoopError(StalkerError):
    pass


class BlockedError(StalkerError):
    """Edge protection (Cloudflare or a WAF) is in the way."""


class ProtocolError(StalkerError):
    """Portal answered with something we can't read: HTML, broken JSON, empty field."""


class InvalidCredentialsError(StalkerError):
    pass
