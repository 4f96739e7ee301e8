import uvicorn

from .config import SETTINGS, logger


def main() -> None:
    logger.info("=== BUBBLESCAN OMR SERVICE ===")
    logger.info("Listening on port %d", SETTINGS.port)
    uvicorn.run(
        "bubblescan.main:app",
        host="0.0.0.0",
        port=SETTINGS.port,
        log_level=SETTINGS.log_level.lower(),
    )


if __name__ == "__main__":
    main()
