import logging
import os


def configure_logging(level: str | None = None) -> None:
    """Configure default root logging only if not already configured.

    LOG_LEVEL wins over the explicit `level` argument. basicConfig runs only
    when the root logger has no handlers, so uvicorn's own handlers and the
    pytest capture handler are left alone; in that case only the level is set.
    Noisy vendor loggers (httpx, stripe, urllib3) are held at WARNING unless
    DEBUG is requested.
    """
    chosen = (os.getenv("LOG_LEVEL") or level or "INFO").upper()
    lvl = getattr(logging, chosen, logging.INFO)
    root = logging.getLogger()

    if not root.handlers:
        logging.basicConfig(
            format='[%(asctime)s] %(levelname)s %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
            level=lvl,
        )
    else:
        root.setLevel(lvl)

    vendor_level = logging.DEBUG if lvl <= logging.DEBUG else logging.WARNING
    for name in ('httpx', 'stripe', 'urllib3', 'openai'):
        logging.getLogger(name).setLevel(vendor_level)
