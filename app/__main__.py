import uvicorn

from app.core.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        timeout_keep_alive=settings.API_IDLE_TIMEOUT_SEC,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
