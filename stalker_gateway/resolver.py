from __future__ import annotations
import logging

import httpx

from .channels import Channel
from .errors import ProtocolError, StalkerError
from .portal import decode_json

log = logging.getLogger(__name__)


async def new_link(channel: Channel, retry: bool = False) -> str:
    """Ask the portal for a fresh playable URL of ``channel``.

    Links expire quickly, so nothing is cached: every call goes over the wire.
    A body that won't decode usually means the session expired; on the first
    attempt we log in again and try once more.
    """
    portal = channel.portal
    body = await portal.request(portal.api_url(action="create_link", type="itv", cmd=channel.cmd))
    try:
        data = decode_json(body, "create_link")
    except ProtocolError as exc:
        log.warning("Failed to retrieve new link for %s: %s", channel.title, exc)
        if retry:
            raise
        try:
            reauthenticated = await portal.reauthenticate()
        except (StalkerError, httpx.HTTPError) as exc2:
            log.warning("Reauthentication failed: %s", exc2)
            raise exc from exc2
        if not reauthenticated:
            raise
        log.info("Reauthentication success, retrying to retrieve new link...")
        return await new_link(channel, retry=True)

    js = data.get("js")
    cmd = js.get("cmd") if isinstance(js, dict) else None
    cmd = cmd.strip() if isinstance(cmd, str) else ""
    if not cmd:
        raise ProtocolError("empty cmd in create_link response")
    # "ffmpeg http://..." -> the URL is the last word
    return cmd.split()[-1]
