"""Run the API server: ``python -m schoolsync``."""

import uvicorn

from schoolsync.core.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "schoolsync.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
