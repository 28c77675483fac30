"""Entry point for the standalone service process."""

import uvicorn

from zimshelf.config import settings


def main() -> None:
    uvicorn.run(
        "zimshelf.main:app",
        host=settings.host,
        port=settings.port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
