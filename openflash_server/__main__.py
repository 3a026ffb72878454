"""Run the server with uvicorn: ``python -m openflash_server``."""

import uvicorn

from openflash_server.core.config import ConfigService


def main() -> None:
    config = ConfigService().load()
    uvicorn.run(
        "openflash_server.main:app",
        host=config.server.host,
        port=config.server.port,
    )


if __name__ == "__main__":
    main()
