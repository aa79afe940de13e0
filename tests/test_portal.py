import asyncio

import httpx
import pytest

from stalker_gateway.errors import BlockedError, InvalidCredentialsError, ProtocolError
from stalker_gateway.portal import (CredentialsAuth, DeviceIDAuth, NoAuth, select_auth, select_reauth)

from .conftest import PORTAL_URL, html, js, make_portal, portal_config


def api(routes, default=None):
    """Answer portal API calls by action; the warm-up GET gets an empty 200."""
    def answer(r: httpx.Request):
        action = r.url.params.get("action")
        if action is None:
            return httpx.Response(200)
        route = routes.get(action, default)
        if route is None:
            raise AssertionError(f"unexpected action {action}")
        return route(r) if callable(route) else route
    return answer


def test_strategy_selection():
    assert isinstance(select_auth(portal_config(username="u", password="p", device_id_auth=True)), CredentialsAuth)
    assert isinstance(select_auth(portal_config(username="u", device_id_auth=True)), DeviceIDAuth)
    assert isinstance(select_auth(portal_config()), NoAuth)
    assert isinstance(select_reauth(portal_config()), DeviceIDAuth)
    assert select_reauth(portal_config(device_id2="")) is None


async def test_handshake_replaces_token():
    portal, rec, _ = make_portal(api({"handshake": js({"token": "NEWTOKEN"})}))
    await portal.handshake()
    assert portal.token == "NEWTOKEN"
    hs = rec.requests[-1]
    assert hs.url.params["token"] == "0123456789ABCDEF0123456789ABCDEF"
    assert hs.url.params["JsHttpRequest"] == "1-xml"
    assert hs.headers["x-user-agent"] == "Model: MAG254; Link: Ethernet"
    assert hs.headers["referer"] == PORTAL_URL


@pytest.mark.parametrize("payload", [{}, {"token": ""}, {"random": "x"}])
async def test_handshake_keeps_token_when_none_issued(payload):
    portal, _, _ = make_portal(api({"handshake": js(payload)}))
    await portal.handshake()
    assert portal.token == "0123456789ABCDEF0123456789ABCDEF"


async def test_handshake_retries_without_token():
    def handshake(r):
        if "token" in r.url.params:
            return html("<html>bad token</html>")
        return js({"token": "FRESH"})

    portal, rec, _ = make_portal(api({"handshake": handshake}))
    await portal.handshake()
    assert portal.token == "FRESH"
    assert rec.actions() == ["handshake", "handshake"]


async def test_handshake_retries_without_token_after_html_error_status():
    def handshake(r):
        if "token" in r.url.params:
            return html("<html>forbidden</html>", status=403)
        return js({"token": "FRESH"})

    portal, rec, sleeps = make_portal(api({"handshake": handshake}))
    await portal.handshake()
    assert portal.token == "FRESH"
    assert rec.actions() == ["handshake", "handshake"]
    # no edge signature, so nothing to wait out
    assert sleeps.calls == []


async def test_handshake_html_error_status_is_blocked():
    portal, rec, _ = make_portal(api({"handshake": html("<html>denied</html>", status=401)}))
    with pytest.raises(BlockedError, match="blocked handshake"):
        await portal.handshake()
    assert rec.actions() == ["handshake", "handshake"]


async def test_handshake_html_is_blocked():
    portal, rec, _ = make_portal(api({"handshake": html()}))
    with pytest.raises(BlockedError, match="blocked handshake"):
        await portal.handshake()
    assert rec.actions() == ["handshake", "handshake"]
    assert "token" not in rec.requests[-1].url.params


async def test_handshake_malformed_json():
    portal, _, _ = make_portal(api({"handshake": httpx.Response(200, content=b"{oops")}))
    with pytest.raises(ProtocolError):
        await portal.handshake()


async def test_warmup_block_is_fatal():
    def answer(r):
        return httpx.Response(403, content=b"<html/>", headers={"Server": "cloudflare"})

    portal, rec, _ = make_portal(answer)
    with pytest.raises(BlockedError, match="warmup"):
        await portal.handshake()
    assert len(rec.requests) == 1


async def test_credentials_auth():
    portal, rec, _ = make_portal(api({"do_auth": js(True, "ok")}), username="user", password="p@ss")
    await portal.authenticate()
    params = rec.requests[0].url.params
    assert (params["login"], params["password"]) == ("user", "p@ss")
    assert (params["device_id"], params["device_id2"]) == ("DID1", "DID2")


async def test_credentials_rejected():
    portal, _, _ = make_portal(api({"do_auth": js(False, "wrong")}), username="user", password="bad")
    with pytest.raises(InvalidCredentialsError):
        await portal.authenticate()


async def test_credentials_html_is_blocked():
    portal, _, _ = make_portal(api({"do_auth": html("<html>nope</html>")}), username="user", password="p")
    with pytest.raises(BlockedError):
        await portal.authenticate()


async def test_device_id_auth():
    portal, rec, _ = make_portal(api({"get_profile": js({"id": "42", "fname": "Box"})}), device_id_auth=True)
    await portal.authenticate()
    params = rec.requests[0].url.params
    assert params["auth_second_step"] == "1"
    assert params["stb_type"] == "MAG254"


async def test_device_id_auth_without_profile():
    portal, _, _ = make_portal(api({"get_profile": js({"id": ""})}), device_id_auth=True)
    with pytest.raises(InvalidCredentialsError):
        await portal.authenticate()


async def test_start_runs_one_auth_and_tolerates_watchdog_failure():
    routes = {
        "handshake": js({"token": "T"}),
        "do_auth": js(True),
        "get_events": httpx.Response(500),
    }
    portal, rec, _ = make_portal(api(routes), username="u", password="p", device_id_auth=True, watchdog=0)
    await portal.start()
    assert rec.actions() == ["handshake", "do_auth", "get_events"]
    assert rec.requests[-1].headers["authorization"] == "Bearer T"
    await portal.stop()


async def test_start_without_auth():
    routes = {"handshake": js({}), "get_events": js({"data": {"msgs": 0}})}
    portal, rec, _ = make_portal(api(routes), watchdog=0)
    await portal.start()
    assert rec.actions() == ["handshake", "get_events"]


async def test_watchdog_keeps_ticking_after_errors():
    calls = []

    def events(r):
        calls.append(r)
        return httpx.Response(500) if len(calls) == 1 else js({"data": {"msgs": 0}})

    portal, _, _ = make_portal(api({"get_events": events}))
    portal._watchdog = asyncio.create_task(portal._watchdog_loop(0))
    while len(calls) < 3:
        await asyncio.sleep(0)
    await portal.stop()
    assert portal._watchdog is None
    assert len(calls) >= 3


async def test_cloudflare_html_on_api_call():
    portal, _, _ = make_portal(api({"get_events": html("<html>cloudflare says no</html>")}))
    with pytest.raises(BlockedError):
        await portal.watchdog_update()


async def test_set_token():
    portal, _, _ = make_portal(api({}))
    await portal.set_token("X")
    assert portal.token == "X"
