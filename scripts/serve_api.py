from __future__ import annotations

import uvicorn

from apptnotify.apps.api.main import create_app
from apptnotify.core.config import get_settings
from apptnotify.core.logging import configure_logging


def main() -> None:
    # Serve the notification API with env-driven bind settings for compose and local runs.
    configure_logging()
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
