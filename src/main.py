import uvicorn

from config import settings


def main():
    # Built by uvicorn on startup so importing api has no side effects
    uvicorn.run(
        "api:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        reload=settings.RELOAD,
    )


if __name__ == "__main__":
    main()
