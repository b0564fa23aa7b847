"""Run the stream service: ``python -m livecast``."""

import uvicorn

from .api.main import create_app
from .config import get_settings


def main() -> int:
    settings = get_settings()
    app = create_app(settings)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,  # logging is configured by the app factory
        access_log=False,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
