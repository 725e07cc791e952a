"""Run the voicepipe server: ``python -m voicepipe``."""

import logging

import uvicorn

from voicepipe.config import Settings
from voicepipe.errors import ConfigError
from voicepipe.main import create_app


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    settings = Settings.from_env()
    try:
        settings.validate()
    except ConfigError as exc:
        raise SystemExit(str(exc)) from exc
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
