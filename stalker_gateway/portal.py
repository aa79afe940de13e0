"""One authenticated session against a Stalker middleware portal.

Startup order is warm-up, handshake, authentication, then the watchdog. The
token lives on the Portal object and is read by every outbound request.
Writes go through ``token_lock``.
"""
from __future__ import annotations
import asyncio, json, logging
from typing import Any, Dict, Optional
from urllib.parse import quote, urlencode

from .config import PortalConfig
from .errors import BlockedError, InvalidCredentialsError, ProtocolError
from .fetch import Fetcher, is_edge_block, is_html, portal_headers, portal_origin

log = logging.getLogger(__name__)

JS_HTTP_REQUEST = "JsHttpRequest=1-xml"
WARMUP_HINT     = "cloudflare or WAF blocked warmup: ensure cf_clearance cookie and matching user_agent"
HANDSHAKE_HINT  = ("cloudflare or WAF blocked handshake: set portal.cookies (cf_clearance, etc.) "
                   "and portal.user_agent to match your browser")
AUTH_HTML_HINT  = "authentication response was HTML (portal may be blocked by Cloudflare or credentials invalid)"
API_BLOCK_HINT  = "cloudflare challenge detected: set portal.cookies with cf_clearance and portal.user_agent"

# ---------------------------------------------------------------------------

def decode_json(body: bytes, what: str) -> Dict[str, Any]:
    if is_html(body):
        raise ProtocolError(f"{what}: got HTML instead of JSON")
    try:
        data = json.loads(body)
    except ValueError as exc:
        raise ProtocolError(f"{what}: malformed JSON ({exc})") from exc
    if not isinstance(data, dict):
        raise ProtocolError(f"{what}: expected a JSON object")
    return data


class AuthStrategy:
    name = "none"

    async def authenticate(self, portal: "Portal"):
        pass


class NoAuth(AuthStrategy):
    pass


class CredentialsAuth(AuthStrategy):
    name = "credentials"

    async def authenticate(self, portal: "Portal"):
        body = await portal.request(portal.api_url(
            type="stb", action="do_auth", login=portal.username, password=portal.password,
            device_id=portal.device_id, device_id2=portal.device_id2))
        if is_html(body):
            log.debug("do_auth answered with HTML: %s", body[:500])
            raise BlockedError(AUTH_HTML_HINT)
        data = decode_json(body, "authentication")
        log.info("Logging in to Stalker says: %s", data.get("text", ""))
        if data.get("js") is True:
            return
        raise InvalidCredentialsError("invalid credentials")


class DeviceIDAuth(AuthStrategy):
    name = "device ids"

    async def authenticate(self, portal: "Portal"):
        log.info("Authenticating with DeviceId and DeviceId2")
        body = await portal.request(portal.api_url(
            type="stb", action="get_profile", hd="1", sn=portal.serial_number, stb_type=portal.model,
            device_id=portal.device_id, device_id2=portal.device_id2, auth_second_step="1"))
        if is_html(body):
            log.debug("get_profile answered with HTML: %s", body[:500])
            raise BlockedError(AUTH_HTML_HINT)
        data = decode_json(body, "authentication")
        log.info("Logging in to Stalker says: %s", data.get("text", ""))
        js = data.get("js")
        profile_id = js.get("id") if isinstance(js, dict) else None
        if profile_id not in (None, ""):
            log.info("Authenticated as %s", js.get("fname", ""))
            return
        raise InvalidCredentialsError("invalid credentials")


def select_auth(cfg: PortalConfig) -> AuthStrategy:
    """Strategy used at startup."""
    if cfg.username and cfg.password:
        return CredentialsAuth()
    if cfg.device_id_auth:
        return DeviceIDAuth()
    return NoAuth()


def select_reauth(cfg: PortalConfig) -> Optional[AuthStrategy]:
    """Strategy used to recover an expired session, None when there is nothing to retry with."""
    if cfg.username and cfg.password:
        return CredentialsAuth()
    if cfg.device_id and cfg.device_id2:
        return DeviceIDAuth()
    return None

# ---------------------------------------------------------------------------

class Portal:
    def __init__(self, cfg: PortalConfig, fetcher: Fetcher):
        self.fetcher = fetcher
        self.location = cfg.url
        self.model = cfg.model
        self.serial_number = cfg.serial_number
        self.device_id = cfg.device_id
        self.device_id2 = cfg.device_id2
        self.signature = cfg.signature
        self.mac = cfg.mac
        self.username = cfg.username
        self.password = cfg.password
        self.time_zone = cfg.time_zone
        self.user_agent = cfg.user_agent
        self.cookies = cfg.cookies
        self.watchdog_minutes = cfg.watchdog
        self.auth = select_auth(cfg)
        self.reauth = select_reauth(cfg)
        self.token_lock = asyncio.Lock()
        self._token = cfg.token
        self._watchdog: Optional[asyncio.Task] = None

    @property
    def token(self) -> str:
        return self._token

    async def set_token(self, token: str):
        async with self.token_lock:
            self._token = token

    # -- requests -----------------------------------------------------------

    def api_url(self, **params: str) -> str:
        query = urlencode(params, quote_via=quote, safe=":/")
        return f"{self.location}?{query}&{JS_HTTP_REQUEST}"

    def api_headers(self) -> Dict[str, str]:
        h = portal_headers(self)
        h.update({
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.5",
            "Connection": "keep-alive",
            "X-User-Agent": f"Model: {self.model}; Link: Ethernet",
            "X-Requested-With": "XMLHttpRequest",
            "Sec-Fetch-Dest": "empty",
            "Sec-Fetch-Mode": "cors",
            "Sec-Fetch-Site": "same-origin",
        })
        origin = portal_origin(self.location)
        if origin:
            h["Origin"] = origin
            h["Referer"] = self.location
        return h

    async def request(self, url: str, *, check_block: bool = True, any_status: bool = False) -> bytes:
        """GET a portal API URL and return the raw body."""
        body, _ = await self.fetcher.download(url, self, headers=self.api_headers(), any_status=any_status)
        if check_block and is_html(body):
            lower = body.lower()
            if b"cloudflare" in lower or b"cf_clearance" in lower:
                raise BlockedError(API_BLOCK_HINT)
        return body

    # -- lifecycle ----------------------------------------------------------

    async def start(self):
        """Connect, authenticate and start the watchdog. Errors here should stop the process."""
        await self.handshake()
        await self.auth.authenticate(self)

        try:
            await self.watchdog_update()
        except Exception as exc:
            log.warning("Initial watchdog update failed: %s", exc)

        if self.watchdog_minutes > 0:
            log.info("Enabling Watchdog Updates every %s min", self.watchdog_minutes)
            self._watchdog = asyncio.create_task(self._watchdog_loop(self.watchdog_minutes * 60))
        else:
            log.info("Proceeding without Watchdog Updates")

    async def stop(self):
        task, self._watchdog = self._watchdog, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def warmup(self):
        """Plain GET to the portal so edge protection can hand out its cookies."""
        h = portal_headers(self)
        del h["Authorization"]
        h.update({"Accept": "*/*", "Accept-Language": "en-US,en;q=0.5",
                  "Sec-Fetch-Dest": "empty", "Sec-Fetch-Mode": "navigate", "Sec-Fetch-Site": "none"})
        origin = portal_origin(self.location)
        if origin:
            h["Origin"] = origin
            h["Referer"] = self.location
        client = self.fetcher.client
        resp = await client.send(client.build_request("GET", self.location, headers=h), stream=True)
        try:
            if resp.status_code == 403 and is_edge_block(resp):
                body = await resp.aread()
                log.debug("Warmup blocked: %s", body[:500])
                raise BlockedError(WARMUP_HINT)
        finally:
            await resp.aclose()

    async def handshake(self):
        """Reserve our token, or take the one the portal hands out instead."""
        await self.warmup()
        async with self.token_lock:
            body = await self.request(self.api_url(type="stb", action="handshake", token=self._token),
                                      check_block=False, any_status=True)
            if is_html(body):
                # some portals only issue a token when none is offered
                body = await self.request(self.api_url(type="stb", action="handshake"),
                                          check_block=False, any_status=True)
                if is_html(body):
                    log.debug("Handshake answered with HTML: %s", body[:500])
                    raise BlockedError(HANDSHAKE_HINT)
            data = decode_json(body, "handshake")
            js = data.get("js")
            token = js.get("token") if isinstance(js, dict) else None
            if token:
                self._token = str(token)
                log.info("Portal issued token %s", self._token)

    async def authenticate(self):
        await self.auth.authenticate(self)

    async def reauthenticate(self) -> bool:
        """Log in again after the session expired. False when no credentials are configured."""
        if self.reauth is None:
            return False
        log.info("Attempting to re-authenticate via %s ...", self.reauth.name)
        await self.reauth.authenticate(self)
        return True

    async def watchdog_update(self):
        body = await self.request(self.api_url(
            action="get_events", event_active_id="0", init="0", type="watchdog", cur_play_type="1"))
        decode_json(body, "watchdog update")

    async def _watchdog_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            try:
                await self.watchdog_update()
            except Exception as exc:
                log.warning("Watchdog update error: %s", exc)
