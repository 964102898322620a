"""Run the proxy HTTP app from a checkout, reading ``.env`` from the repo root."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from dotenv import load_dotenv
import uvicorn

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from slackbot_proxy.settings import get_settings
from slackbot_proxy.utils.env import mask
from slackbot_proxy.utils.logging_setup import setup_logging

log = logging.getLogger("slackbot_proxy.runner")


def main() -> int:
    load_dotenv(PROJECT_ROOT / ".env")
    setup_logging()

    settings = get_settings()
    log.info(
        "Serving %s on %s:%s db=%s admin_token=%s",
        settings.app_brand,
        settings.server_host,
        settings.server_port,
        settings.relation_db,
        mask(settings.admin_token, show=2) or "-",
    )
    try:
        uvicorn.run(
            "slackbot_proxy.api.server:create_app",
            factory=True,
            host=settings.server_host,
            port=settings.server_port,
            log_level="info",
        )
    except KeyboardInterrupt:
        pass
    except Exception:
        log.exception("Proxy server crashed")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
