import uvicorn

from goip.config import Settings
from goip.logger import build_log_config


def main() -> None:
    """Run the geolocation service with uvicorn using the loaded settings."""
    settings = Settings.load()
    uvicorn.run(
        "goip.main:app",
        host=settings.server.host,
        port=settings.server.port,
        log_config=build_log_config(settings.log.level, settings.log.format),
        timeout_keep_alive=int(settings.server.read_timeout),
        timeout_graceful_shutdown=int(settings.server.shutdown_timeout),
    )


if __name__ == "__main__":
    main()
