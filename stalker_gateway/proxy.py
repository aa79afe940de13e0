# Proxy gateway: looks like the portal's load.php to a set-top-box player.
# create_link is answered by us with a link resolved through our own session,
# everything else is forwarded with our session's credentials swapped in.

from __future__ import annotations
import json, logging
from typing import Awaitable, Callable, Dict, Mapping, Optional
from urllib.parse import quote

import httpx
from fastapi import FastAPI, HTTPException, Request, Response
from starlette.background import BackgroundTask
from starlette.responses import StreamingResponse

from .channels import Channel
from .errors import StalkerError
from .fetch import Fetcher, cookie_line, is_edge_block, portal_origin
from .portal import Portal
from .resolver import new_link

log = logging.getLogger(__name__)

JS_TYPE        = "text/javascript; charset=UTF-8"
EDGE_PAUSE     = 5.0
DROP_HEADERS   = {"referer", "referrer", "host", "content-length"}
HOP_HEADERS    = {"connection", "keep-alive", "transfer-encoding"}

# ---------------------------------------------------------------------------

def special_link_escape(link: str) -> str:
    return link.replace("/", "\\/")


def new_channel_link(link: str, cmd_id: str, ch_id: str) -> str:
    """create_link answer, byte for byte what the PHP backend prints (debug text included)."""
    link = special_link_escape(link)
    ch_id = ch_id or "0"
    return ('{"js":{"id":"' + cmd_id + '","cmd":"' + link + '","streamer_id":0,"link_id":' + ch_id +
            ',"load":0,"error":""},"text":"array(6) {\\n  [\\"id\\"]=>\\n  string(4) \\"' + cmd_id +
            '\\"\\n  [\\"cmd\\"]=>\\n  string(99) \\"' + link +
            '\\"\\n  [\\"streamer_id\\"]=>\\n  int(0)\\n  [\\"link_id\\"]=>\\n  int(' + ch_id +
            ')\\n  [\\"load\\"]=>\\n  int(0)\\n  [\\"error\\"]=>\\n  string(0) \\"\\"\\n}\\n'
            'generated in: 0.01s; query counter: 8; cache hits: 0; cache miss: 0; php errors: 0; sql errors: 0;"}')


def remap_headers(src: Mapping[str, str], portal: Portal) -> Dict[str, str]:
    """Player headers with its credentials replaced by ours; referers are dropped."""
    out = {}
    for k, v in src.items():
        name = k.lower()
        if name == "authorization":
            out["Authorization"] = "Bearer " + portal.token
        elif name == "cookie":
            out["Cookie"] = cookie_line(portal)
        elif name in DROP_HEADERS:
            continue
        else:
            out[k] = v
    return out


async def forward(client: httpx.AsyncClient, url: str, headers: Dict[str, str],
                  sleep: Callable[[float], Awaitable[None]]) -> httpx.Response:
    req = client.build_request("GET", url, headers=headers)
    resp = await client.send(req, stream=True)
    if is_edge_block(resp):
        await resp.aclose()
        log.warning("Edge challenge while forwarding %s, retrying in %.0fs", url, EDGE_PAUSE)
        await sleep(EDGE_PAUSE)
        resp = await client.send(client.build_request("GET", url, headers=headers), stream=True)
    return resp

# ---------------------------------------------------------------------------

def create_app(portal: Portal, channels: Mapping[str, Channel], fetcher: Fetcher, *,
               rewrite: bool = False, hls_bind: Optional[str] = None) -> FastAPI:
    app = FastAPI(title="stalker-gateway proxy", docs_url=None, redoc_url=None, openapi_url=None)
    by_cmd = {ch.cmd: ch for ch in channels.values()}

    def hls_link(ch: Channel, request: Request) -> str:
        host, _, port = (hls_bind or "").rpartition(":")
        if host in ("", "0.0.0.0", "[::]", "::"):
            host = request.url.hostname or "127.0.0.1"
        return f"http://{host}:{port}/iptv/{quote(ch.title, safe='')}"

    async def create_link(request: Request) -> Response:
        cmd = request.query_params.get("cmd", "")
        ch = by_cmd.get(cmd)
        if ch is None:
            raise HTTPException(404, "unknown channel cmd")
        if rewrite:
            link = hls_link(ch, request)
        else:
            try:
                link = await new_link(ch)
            except (StalkerError, httpx.HTTPError) as exc:
                log.warning("Can't get a link for %s: %s", ch.title, exc)
                raise HTTPException(502, str(exc))
        log.info("PROXY create_link %s => %s", ch.title, link)
        # the envelope carries the cmds entry's ch_id as "id" and its id as "link_id"
        return Response(new_channel_link(link, ch.cmd_ch_id, ch.cmd_id), media_type=JS_TYPE)

    @app.get("/{path:path}")
    async def portal_api(path: str, request: Request):
        q = request.query_params
        action = q.get("action", "")
        if action == "create_link" and q.get("type") == "itv":
            return await create_link(request)
        if action == "handshake":
            # players must not rotate the token our own session depends on
            return Response(json.dumps({"js": {"token": portal.token}}), media_type=JS_TYPE)
        if action == "logout":
            return Response('{"js":true}', media_type=JS_TYPE)

        origin = portal_origin(portal.location)
        url = f"{origin}/{path}"
        if request.url.query:
            url += "?" + request.url.query
        try:
            resp = await forward(fetcher.client, url, remap_headers(request.headers, portal), fetcher.sleep)
        except httpx.HTTPError as exc:
            log.warning("Forwarding %s failed: %s", url, exc)
            raise HTTPException(502, str(exc))
        headers = {k: v for k, v in resp.headers.items() if k.lower() not in HOP_HEADERS}
        return StreamingResponse(resp.aiter_raw(), status_code=resp.status_code, headers=headers,
                                 background=BackgroundTask(resp.aclose))

    return app
