"""
slotgrab - main entry point

Initializes the broadcast hub and run control, plugs in the vendor client,
starts the server. One file to understand how everything connects.

Usage:
    VENDOR_CLIENT=mypkg.client:SamsClient python main.py
"""

import os
import re
import logging
from typing import Optional
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact long hex strings (vendor auth tokens) from all log output."""
    _PATTERN = re.compile(r'(?<![0-9a-fA-F])([0-9a-fA-F]{32,})(?![0-9a-fA-F])')

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            record.msg = self._PATTERN.sub('[REDACTED]', record.msg)
        if record.args:
            try:
                formatted = record.getMessage()
            except (TypeError, ValueError):
                return True
            if self._PATTERN.search(formatted):
                record.msg = self._PATTERN.sub('[REDACTED]', formatted)
                record.args = None
        return True


_mask_filter = _SecretMaskingFilter()
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("slotgrab.main")


# ============================================================
# MODULE IMPORTS
# ============================================================

from core.broadcast import BroadcastHub
from core.run_control import AcquisitionController
from core.vendor import ClientFactory, load_client_factory
from api.server import create_app


def _load_vendor_factory() -> Optional[ClientFactory]:
    """Resolve VENDOR_CLIENT; without it, configure reports the missing integration."""
    target = os.getenv("VENDOR_CLIENT", "")
    if not target:
        logger.warning("VENDOR_CLIENT not set, sessions cannot be configured")
        return None
    try:
        return load_client_factory(target)
    except (ImportError, AttributeError, TypeError) as e:
        logger.error(f"Failed to load vendor client {target!r}: {e}")
        return None


# ============================================================
# GLOBALS (singleton instances)
# ============================================================

hub = BroadcastHub()
controller = AcquisitionController(hub, _load_vendor_factory())


@asynccontextmanager
async def lifespan(app):
    """Startup and shutdown."""
    logger.info("=" * 60)
    logger.info("slotgrab control surface starting")
    logger.info("=" * 60)

    yield

    logger.info("slotgrab shutting down...")
    await controller.shutdown()
    logger.info("Goodbye.")


def create_slotgrab_app():
    """Create the fully wired FastAPI app."""
    app = create_app(controller)
    app.router.lifespan_context = lifespan
    return app


# ============================================================
# ENTRY POINT
# ============================================================

app = create_slotgrab_app()

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    reload = os.getenv("DEV", "").lower() in ("1", "true", "yes")

    logger.info(f"Starting server on {host}:{port} (reload={reload})")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=LOG_LEVEL.lower(),
    )
