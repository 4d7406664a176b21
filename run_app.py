# Starts the ASGI server (Uvicorn) for the FastAPI app defined in `funnel_server/backend.py`,
# using the host and port from the environment (PORT defaults to 3000).

import uvicorn

from funnel_server.config import configure_logging, get_settings


def main():
    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(
        "funnel_server.main:app",  # "module:object" path of the FastAPI app
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
