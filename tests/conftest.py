import json

import httpx

from stalker_gateway.config import PortalConfig
from stalker_gateway.fetch import Fetcher
from stalker_gateway.portal import Portal

PORTAL_URL = "https://portal.example/stalker_portal/server/load.php"


def js(payload, text=""):
    return httpx.Response(200, content=json.dumps({"js": payload, "text": text}).encode(),
                          headers={"Content-Type": "text/javascript"})


def html(body="<html><body>Just a moment...</body></html>", status=200, **headers):
    return httpx.Response(status, content=body.encode(), headers={"Content-Type": "text/html", **headers})


class Recorder:
    """MockTransport handler that remembers requests and answers from a callable."""

    def __init__(self, answer):
        self.answer = answer
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        resp = self.answer(request)
        # canned responses get reused, hand the client a fresh unread copy of the raw body each time
        return httpx.Response(resp.status_code, headers=resp.headers, stream=resp.stream)

    def actions(self):
        return [r.url.params.get("action") for r in self.requests if "action" in r.url.params]


class Sleeps:
    def __init__(self):
        self.calls = []

    async def __call__(self, delay):
        self.calls.append(delay)


def portal_config(**kw) -> PortalConfig:
    base = dict(model="MAG254", serial_number="SN123", device_id="DID1", device_id2="DID2",
                mac="AA:BB:CC:DD:EE:FF", url=PORTAL_URL, time_zone="Europe/London",
                token="0123456789ABCDEF0123456789ABCDEF")
    base.update(kw)
    return PortalConfig(**base)


def make_fetcher(answer, *, max_attempts=3):
    rec = Recorder(answer)
    sleeps = Sleeps()
    client = httpx.AsyncClient(transport=httpx.MockTransport(rec), follow_redirects=False)
    return Fetcher(client, max_attempts=max_attempts, sleep=sleeps), rec, sleeps


def make_portal(answer, **cfg):
    fetcher, rec, sleeps = make_fetcher(answer)
    return Portal(portal_config(**cfg), fetcher), rec, sleeps
