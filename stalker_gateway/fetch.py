"""Outbound HTTP towards the portal and the streams it hands out.

Redirects are resolved by hand: the transport's own redirect handling adds a
Referer which makes some backends answer 404. Edge challenges (403/503 with a
Cloudflare signature) are retried with exponential backoff.
"""
from __future__ import annotations
import asyncio, logging
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import quote, urljoin, urlsplit

import httpx

from .errors import BlockedError, RedirectLoopError, StalkerError, UpstreamError

if TYPE_CHECKING:
    from .portal import Portal

log = logging.getLogger(__name__)

HTTP_TIMEOUT       = 30
MAX_REDIRECTS      = 10
EDGE_MAX_ATTEMPTS  = 3
EDGE_INITIAL_WAIT  = 3.0
EDGE_BACKOFF       = 2.0
EDGE_MAX_WAIT      = 15.0
EDGE_STATUSES      = {403, 503}

BROWSER_UA  = ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
               "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36")
LEGACY_UA   = ("Mozilla/5.0 (QtEmbedded; U; Linux; C) AppleWebKit/533.3 (KHTML, like Gecko) "
               "MAG200 stbapp ver: 4 rev: 2116 Mobile Safari/533.3")

# ---------------------------------------------------------------------------

def new_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=HTTP_TIMEOUT, follow_redirects=False, transport=transport)


def is_edge_block(resp: httpx.Response) -> bool:
    if resp.status_code not in EDGE_STATUSES:
        return False
    return "cloudflare" in resp.headers.get("server", "").lower() or bool(resp.headers.get("cf-ray"))


def is_html(body: bytes) -> bool:
    return body[:1] == b"<"


def cookie_line(portal: "Portal") -> str:
    line = (f"sn={quote(portal.serial_number, safe='')}; mac={quote(portal.mac, safe='')}; "
            f"stb_lang=en; timezone={quote(portal.time_zone, safe='')};")
    extra = (portal.cookies or "").strip()
    if extra:
        line += " " + extra
    return line


def portal_origin(location: str) -> str:
    """scheme://host of the portal, or "" when the URL makes no sense."""
    try:
        u = urlsplit(location)
    except ValueError:
        return ""
    if not u.scheme or not u.netloc:
        return ""
    return f"{u.scheme}://{u.netloc}"


def portal_referer(portal: Optional["Portal"]) -> str:
    if portal is None:
        return ""
    origin = portal_origin(portal.location)
    return origin + "/" if origin else ""


def portal_headers(portal: "Portal", referer: str = "") -> Dict[str, str]:
    """Browser-looking headers plus the session cookie and bearer token."""
    h = {
        "User-Agent": portal.user_agent or BROWSER_UA,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
        "Sec-CH-UA": '"Chromium";v="131", "Not_A Brand";v="24"',
        "Sec-CH-UA-Mobile": "?0",
        "Sec-CH-UA-Platform": '"Windows"',
        "Cookie": cookie_line(portal),
        "Authorization": "Bearer " + portal.token,
    }
    if referer:
        h["Referer"] = referer
    return h

# ---------------------------------------------------------------------------

class Fetcher:
    """Shared outbound client. One per process, handed to the portal and gateways."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, *,
                 max_attempts: int = EDGE_MAX_ATTEMPTS,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.client = client or new_client()
        self.max_attempts = max_attempts
        self.sleep = sleep

    async def aclose(self):
        await self.client.aclose()

    def jar_cookies(self, host: str) -> str:
        """Cookies the portal (or its edge) set on earlier responses, as "a=1; b=2;"."""
        pairs = []
        for c in self.client.cookies.jar:
            domain = c.domain.lstrip(".")
            if host == domain or host.endswith("." + domain):
                pairs.append(f"{c.name}={c.value}")
        return "; ".join(pairs) + ";" if pairs else ""

    async def send_with_edge_retry(self, req: httpx.Request) -> httpx.Response:
        """Send ``req``; on an edge block drop the body, wait and try again.

        After the last attempt the (still blocked) response is returned as-is,
        the caller gets to decide what an HTML body means.
        """
        wait = EDGE_INITIAL_WAIT
        retries = max(self.max_attempts, 1) - 1
        resp = await self.client.send(req, stream=True)
        for attempt in range(1, retries + 1):
            if not is_edge_block(resp):
                break
            await resp.aclose()
            log.warning("Edge challenge from %s (HTTP %s), retry %s/%s in %.1fs",
                        req.url.host, resp.status_code, attempt, retries, wait)
            await self.sleep(wait)
            wait = min(wait * EDGE_BACKOFF, EDGE_MAX_WAIT)
            # fresh request object each time, the old one has been consumed
            req = self.client.build_request(req.method, req.url, headers=req.headers)
            resp = await self.client.send(req, stream=True)
        return resp

    async def response(self, url: str, portal: Optional["Portal"] = None, *,
                       headers: Optional[Dict[str, str]] = None,
                       any_status: bool = False,
                       _depth: int = 0) -> httpx.Response:
        """GET ``url`` and return the 2xx response with its body still unread.

        With ``any_status`` a final 4xx/5xx answer is returned too instead of
        raised, for callers that judge the body themselves. Redirects are
        followed either way. The caller owns the returned response and must
        close it.
        """
        if _depth > MAX_REDIRECTS:
            raise RedirectLoopError(f"too many redirects while fetching {url}")

        if portal is not None:
            h = portal_headers(portal, portal_referer(portal))
        else:
            h = {"User-Agent": LEGACY_UA}
        if headers:
            h.update(headers)

        try:
            host = urlsplit(url).hostname or ""
        except ValueError as exc:
            raise StalkerError("unknown error occurred") from exc
        # an explicit Cookie header hides the jar, so carry clearance cookies over by hand
        jar = self.jar_cookies(host)
        if jar and "Cookie" in h:
            h["Cookie"] = h["Cookie"].rstrip() + " " + jar
        try:
            req = self.client.build_request("GET", url, headers=h)
        except httpx.InvalidURL as exc:
            raise StalkerError("unknown error occurred") from exc
        if portal is not None:
            resp = await self.send_with_edge_retry(req)
        else:
            resp = await self.client.send(req, stream=True)

        if 300 <= resp.status_code < 400:
            await resp.aclose()
            location = resp.headers.get("location", "")
            try:
                nxt = urljoin(url, location)
                urlsplit(nxt)
            except ValueError as exc:
                raise StalkerError("unknown error occurred") from exc
            log.debug("Redirect %s -> %s", url, nxt)
            return await self.response(nxt, portal, headers=headers, any_status=any_status,
                                       _depth=_depth + 1)

        if any_status or 200 <= resp.status_code < 300:
            return resp

        await resp.aclose()
        if is_edge_block(resp):
            raise BlockedError(f"{url} is behind an edge challenge (HTTP {resp.status_code}): "
                               "set portal.cookies (cf_clearance) and a matching portal.user_agent")
        raise UpstreamError(url, f"{resp.status_code} {resp.reason_phrase}".strip())

    async def download(self, url: str, portal: Optional["Portal"] = None, *,
                       headers: Optional[Dict[str, str]] = None,
                       any_status: bool = False) -> Tuple[bytes, str]:
        resp = await self.response(url, portal, headers=headers, any_status=any_status)
        try:
            body = await resp.aread()
        finally:
            await resp.aclose()
        return body, resp.headers.get("content-type", "")
