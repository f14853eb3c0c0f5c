from __future__ import annotations

import logging
import os

import uvicorn

from shiftsync.config_manager import ConfigManager


def main() -> None:
    config = ConfigManager(os.getenv("SHIFTSYNC_CONFIG_PATH", "config.yaml")).load()
    logging.basicConfig(
        level=getattr(logging, config.logging.level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.getenv("SHIFTSYNC_HOST", config.server.host)
    port = int(os.getenv("SHIFTSYNC_PORT", str(config.server.port)))
    uvicorn.run("shiftsync.web_app:create_app", host=host, port=port, reload=False, factory=True)


if __name__ == "__main__":
    main()
