import uvicorn

from relay.settings import load_settings


def main():
    settings = load_settings()
    uvicorn.run("relay.app:create_app", factory=True, host="0.0.0.0", port=settings.port, log_level="info")


if __name__ == "__main__":
    main()
