from __future__ import annotations

import os
import signal
import sys
import threading

from loguru import logger

from common.errors import RMountError

from .context import AppContext, bootstrap


ENV_PASSPHRASE = "RMOUNT_PASSPHRASE"


def run(ctx: AppContext, stop: threading.Event) -> None:
    """Start `ctx`, unlock it when a passphrase is provided, and serve until `stop` is set."""
    with ctx:
        passphrase = os.environ.get(ENV_PASSPHRASE)
        if passphrase:
            ctx.unlock(passphrase)
        else:
            logger.info(f"{ENV_PASSPHRASE} not set; config stays locked")
        logger.info("rmount running; send SIGINT or SIGTERM to stop")
        stop.wait()
    logger.info("rmount stopped")


def main() -> None:
    """Entry point for the `rmount` console script and `python -m app`."""
    stop = threading.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, lambda *_: stop.set())

    try:
        ctx = bootstrap()
        run(ctx, stop)
    except RMountError as e:
        logger.error(f"rmount failed: {e}")
        sys.exit(1)
