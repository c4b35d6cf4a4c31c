from __future__ import annotations

import uvicorn

from .app import create_app
from .log import setup_logging
from .settings import load_settings


def main() -> None:
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_format)
    app = create_app(settings)
    uvicorn.run(app, host="0.0.0.0", port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
