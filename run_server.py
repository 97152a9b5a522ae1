#!/usr/bin/env python3
"""sealcash server with a background expiry sweep.

Configuration comes from SEAL_* env vars (see server/config.py); secrets are
never in code.
"""

import logging
import os
import sys
import threading
import time
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn
from server.app import build_services, create_app
from server.config import Settings

logger = logging.getLogger("sealcash")


def run_expiry_sweep(engine, auth, interval: float, stop: threading.Event | None = None):
    """Background thread: expire overdue never-locked escrows and drop stale
    login challenges every *interval* seconds."""
    stop = stop or threading.Event()
    while not stop.wait(interval):
        try:
            expired = engine.expire_overdue()
            pruned = auth.challenges.prune(time.time())
            if expired or pruned:
                logger.info("Sweep: %d escrows expired, %d challenges pruned", expired, pruned)
        except Exception:
            logger.exception("Expiry sweep failed")


def main():
    logging.basicConfig(
        level=os.environ.get("SEAL_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        settings = Settings.from_env()
    except ValueError as e:
        print(e, file=sys.stderr)
        sys.exit(1)

    if settings.db_path != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(settings.db_path)), exist_ok=True)

    engine, auth = build_services(settings)
    app = create_app(engine=engine, auth=auth)

    sweep = threading.Thread(
        target=run_expiry_sweep, args=(engine, auth, settings.expiry_sweep_interval), daemon=True)
    sweep.start()
    logger.info("Bitcoin network: %s (%s)", settings.bitcoin_network,
                "node RPC" if settings.bitcoin_rpc_url else "public relay")
    logger.info("Verifying chains: %s", ", ".join(sorted(settings.chain_rpc_urls)) or "none")
    logger.info("Listening on :%d", settings.port)

    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
