# HLS gateway: /iptv/<title> resolves a fresh link and relays it to the player.
# Playlists are rewritten so segments come back through us, anything else is piped.

from __future__ import annotations
import logging, re
from typing import Dict, Mapping
from urllib.parse import quote, urljoin, urlsplit

import httpx
from fastapi import FastAPI, HTTPException, Request, Response
from starlette.background import BackgroundTask
from starlette.responses import JSONResponse, PlainTextResponse, StreamingResponse

from .channels import Channel
from .errors import StalkerError
from .fetch import Fetcher
from .portal import Portal
from .resolver import new_link

log = logging.getLogger(__name__)

HLS_TYPES       = {"application/vnd.apple.mpegurl", "application/x-mpegurl"}
PLAYLIST_TYPE   = "application/vnd.apple.mpegurl"
FORWARD_HEADERS = ("connection", "content-type", "transfer-encoding", "cache-control", "date")
RAW_HEADERS     = ("content-length", "content-encoding")
STREAM_HEADERS  = {"Accept-Encoding": "identity"}

LINK_HLS   = "hls"
LINK_MEDIA = "media"

SEG_RE = re.compile(r"^(?!#)([^\r\n]*\S[^\r\n]*)", re.M)
URI_RE = re.compile(r'URI="([^"]+)"')

# ---------------------------------------------------------------------------

def link_type(content_type: str) -> str:
    ctype = content_type.split(";", 1)[0].strip().lower()
    if ctype in HLS_TYPES:
        return LINK_HLS
    # video/*, audio/*, octet-stream and whatever else the portal invents
    return LINK_MEDIA


def forward_headers(src: httpx.Headers, content_length: bool) -> Dict[str, str]:
    """Copy the upstream headers a player cares about.

    Content-Length and Content-Encoding only go along for untouched media, the
    bytes are relayed exactly as they came. Players stop reading an HLS playlist
    at Content-Length bytes, and the rewritten one is decoded and resized.
    """
    out = {}
    for name in FORWARD_HEADERS:
        values = src.get_list(name)
        if values:
            out[name] = "; ".join(values)
    if content_length:
        for name in RAW_HEADERS:
            if name in src:
                out[name] = src[name]
    return out


def normalise(seg: str) -> str:
    seg = seg.strip()
    if seg.startswith("://"):
        seg = "http" + seg
    return seg


def proxied(url: str) -> str:
    u = urlsplit(url)
    path = f"/segment/{u.scheme}/{u.netloc}{u.path}"
    return f"{path}?{u.query}" if u.query else path


def rewrite_playlist(text: str, *, base: str, through_gateway: bool = True) -> str:
    """Make every URI in an m3u8 absolute and, when asked, point it back at /segment/."""
    def target(raw: str) -> str:
        seg = normalise(raw)
        full = seg if seg.startswith(("http://", "https://")) else urljoin(base, seg)
        return proxied(full) if through_gateway else full

    text = URI_RE.sub(lambda m: f'URI="{target(m.group(1))}"', text)
    return SEG_RE.sub(lambda m: target(m.group(1)), text)


def m3u_playlist(channels: Mapping[str, Channel], base_url: str) -> str:
    base = base_url.rstrip("/")
    lines = ["#EXTM3U"]
    for title in sorted(channels):
        ch = channels[title]
        q = quote(title, safe="")
        logo = f' tvg-logo="{base}/logo/{q}"' if ch.logo_link else ""
        lines.append(f'#EXTINF:-1{logo} group-title="{ch.genre()}",{title}')
        lines.append(f"{base}/iptv/{q}")
    return "\n".join(lines) + "\n"

# ---------------------------------------------------------------------------

def create_app(portal: Portal, channels: Mapping[str, Channel], fetcher: Fetcher, *,
               rewrite: bool = True) -> FastAPI:
    app = FastAPI(title="stalker-gateway HLS", docs_url=None, redoc_url=None, openapi_url=None)

    async def relay(url: str) -> Response:
        try:
            resp = await fetcher.response(url, portal, headers=STREAM_HEADERS)
        except (StalkerError, httpx.HTTPError) as exc:
            log.warning("Upstream %s failed: %s", url, exc)
            raise HTTPException(502, str(exc))

        if link_type(resp.headers.get("content-type", "")) == LINK_HLS:
            try:
                raw = await resp.aread()
            finally:
                await resp.aclose()
            body = rewrite_playlist(raw.decode(errors="ignore"), base=str(resp.url),
                                    through_gateway=rewrite).encode()
            headers = forward_headers(resp.headers, content_length=False)
            headers.setdefault("content-type", PLAYLIST_TYPE)
            # streamed so no Content-Length is computed for it
            return StreamingResponse(iter([body]), status_code=resp.status_code, headers=headers)

        return StreamingResponse(resp.aiter_raw(), status_code=resp.status_code,
                                 headers=forward_headers(resp.headers, content_length=True),
                                 background=BackgroundTask(resp.aclose))

    def lookup(title: str) -> Channel:
        ch = channels.get(title)
        if ch is None:
            raise HTTPException(404, f"channel '{title}' not found")
        return ch

    @app.get("/")
    async def root():
        return JSONResponse({"status": "ok", "channels": len(channels)})

    @app.get("/iptv")
    async def playlist(request: Request):
        return PlainTextResponse(m3u_playlist(channels, str(request.base_url)),
                                 media_type="audio/x-mpegurl")

    @app.get("/iptv/{title:path}")
    async def channel(title: str):
        ch = lookup(title)
        try:
            link = await new_link(ch)
        except (StalkerError, httpx.HTTPError) as exc:
            log.warning("Can't get a link for %s: %s", title, exc)
            raise HTTPException(502, str(exc))
        log.info("CHANNEL %s => %s", title, link)
        return await relay(link)

    @app.get("/segment/{scheme}/{path:path}")
    async def segment(scheme: str, path: str, request: Request):
        if scheme not in ("http", "https"):
            raise HTTPException(400, "bad scheme")
        url = f"{scheme}://{path}"
        if request.url.query:
            url += "?" + request.url.query
        return await relay(url)

    @app.get("/logo/{title:path}")
    async def logo(title: str):
        link = lookup(title).logo()
        if not link:
            raise HTTPException(404, "no logo")
        try:
            body, ctype = await fetcher.download(link, portal)
        except (StalkerError, httpx.HTTPError) as exc:
            log.warning("Logo %s failed: %s", link, exc)
            raise HTTPException(502, str(exc))
        return Response(body, media_type=ctype or "image/png")

    return app
