from __future__ import annotations
import argparse, asyncio, logging, sys

import httpx
import uvicorn
import yaml

from . import hls, proxy
from .channels import retrieve_channels
from .config import Config, load_config, parse_bind
from .errors import StalkerError
from .fetch import Fetcher
from .portal import Portal

log = logging.getLogger("stalker_gateway")


def serve(app, bind: str) -> uvicorn.Server:
    host, port = parse_bind(bind)
    return uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info"))


async def run(cfg: Config):
    fetcher = Fetcher()
    portal = Portal(cfg.portal, fetcher)
    try:
        log.info("Connecting to Stalker middleware...")
        await portal.start()

        log.info("Retrieving channels list from Stalker middleware...")
        channels = await retrieve_channels(portal)
        if not channels:
            raise StalkerError("no IPTV channels retrieved from Stalker middleware. quitting...")

        servers = []
        if cfg.hls.enabled:
            log.info("Starting HLS service on %s", cfg.hls.bind)
            servers.append(serve(hls.create_app(portal, channels, fetcher, rewrite=cfg.hls.rewrite),
                                 cfg.hls.bind))
        if cfg.proxy.enabled:
            log.info("Starting proxy service on %s", cfg.proxy.bind)
            app = proxy.create_app(portal, channels, fetcher, rewrite=cfg.proxy.rewrite,
                                   hls_bind=cfg.hls.bind)
            servers.append(serve(app, cfg.proxy.bind))
        if cfg.admin.enabled:
            log.warning("Admin UI is not part of this build, ignoring admin on %s", cfg.admin.bind)

        await asyncio.gather(*(s.serve() for s in servers))
    finally:
        await portal.stop()
        await fetcher.aclose()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="stalker-gateway",
                                     description="Stream a Stalker portal to ordinary IPTV players")
    parser.add_argument("--config", default="stalkerhek.yml", help="path to the config file")
    parser.add_argument("--debug", action="store_true", help="verbose logging")
    args = parser.parse_args(argv)

    logging.basicConfig(format="%(asctime)s [%(levelname)s] %(message)s",
                        datefmt="%H:%M:%S", level=logging.DEBUG if args.debug else logging.INFO)
    try:
        cfg = load_config(args.config)
        asyncio.run(run(cfg))
    except (StalkerError, httpx.HTTPError, yaml.YAMLError, OSError) as exc:
        log.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
