from __future__ import annotations
import logging, re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Mapping
from urllib.parse import urlsplit, urlunsplit

from .errors import ProtocolError
from .portal import decode_json

if TYPE_CHECKING:
    from .portal import Portal

log = logging.getLogger(__name__)

PORTAL_ROOT  = "/stalker_portal/"
LOGO_SUFFIX  = "/misc/logos/320/"
OTHER_GENRE  = "Other"

GenreMap = Mapping[str, str]

# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Channel:
    """How to ask the portal for a channel's stream. Not the stream itself."""
    title: str
    cmd: str
    logo_link: str
    genre_id: str
    portal: "Portal" = field(repr=False, compare=False)
    genres: GenreMap = field(repr=False, compare=False)
    # only used to fake create_link answers in the proxy
    cmd_id: str = ""
    cmd_ch_id: str = ""

    def logo(self) -> str:
        if not self.logo_link:
            return ""
        location = self.portal.location
        try:
            u = urlsplit(location)
        except ValueError:
            u = None
        if u is None or not u.netloc:
            return location.rstrip("/") + PORTAL_ROOT.rstrip("/") + LOGO_SUFFIX + self.logo_link
        root = PORTAL_ROOT
        idx = u.path.find(PORTAL_ROOT)
        if idx != -1:
            root = u.path[:idx + len(PORTAL_ROOT)]
        path = root.rstrip("/") + LOGO_SUFFIX + self.logo_link
        return urlunsplit((u.scheme, u.netloc, path, "", ""))

    def genre(self) -> str:
        return title_case(self.genres.get(self.genre_id, OTHER_GENRE))


def title_case(s: str) -> str:
    # first letter of every word, in any script; "HD" stays "HD"
    return re.sub(r"(?<!\w)[^\W\d_]", lambda m: m.group().upper(), s)


def _str(v) -> str:
    return "" if v is None else str(v)


async def get_genres(portal: "Portal") -> Dict[str, str]:
    body = await portal.request(portal.api_url(action="get_genres", type="itv"))
    data = decode_json(body, "genre list")
    js = data.get("js")
    if not isinstance(js, list):
        raise ProtocolError("genre list: 'js' is not an array")
    return {_str(g.get("id")): _str(g.get("title")) for g in js if isinstance(g, dict)}


async def retrieve_channels(portal: "Portal") -> Dict[str, Channel]:
    """Build the title -> Channel catalog. A broken listing fails the whole build."""
    body = await portal.request(portal.api_url(type="itv", action="get_all_channels"))
    data = decode_json(body, "channel list")
    js = data.get("js")
    entries = js.get("data") if isinstance(js, dict) else None
    if not isinstance(entries, list):
        raise ProtocolError("channel list: 'js.data' is not an array")

    genres = await get_genres(portal)

    channels: Dict[str, Channel] = {}
    for v in entries:
        if not isinstance(v, dict):
            continue
        cmds = v.get("cmds") or []
        first = cmds[0] if cmds and isinstance(cmds[0], dict) else {}
        title = _str(v.get("name"))
        channels[title] = Channel(
            title=title,
            cmd=_str(v.get("cmd")),
            logo_link=_str(v.get("logo")),
            genre_id=_str(v.get("tv_genre_id")),
            portal=portal,
            genres=genres,
            cmd_id=_str(first.get("id")),
            cmd_ch_id=_str(first.get("ch_id")),
        )
    log.info("Retrieved %s channels in %s genres", len(channels), len(genres))
    return channels
