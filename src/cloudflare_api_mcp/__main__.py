"""Run the server with uvicorn: ``python -m cloudflare_api_mcp``."""

import uvicorn

from cloudflare_api_mcp.app import create_app
from cloudflare_api_mcp.config import Settings
from cloudflare_api_mcp.logging import configure_logging


def main() -> None:
    settings = Settings.from_env()
    configure_logging(json_output=settings.log_json, level=settings.log_level)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
