"""Run the relayer: ``python -m relayer``."""

import logging
import sys

import uvicorn

from relayer.core.config import get_settings


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )
    settings = get_settings()
    logging.getLogger(__name__).info(
        "Relayer service listening on port %d (%s)", settings.port, settings.env
    )
    uvicorn.run("relayer.main:app", host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
