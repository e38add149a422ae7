import uvicorn
from automation_engine.api.main import create_app
from automation_engine.config.settings import settings
from automation_engine.config.logging import configure_logging

configure_logging()

app = create_app(settings)


def main():
    uvicorn.run(
        "automation_engine.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info"
    )


if __name__ == "__main__":
    main()
