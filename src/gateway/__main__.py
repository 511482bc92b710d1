import os

import uvicorn


def main() -> None:
    """Serve the gateway on QUOTAWATCH_HOST:QUOTAWATCH_PORT (loopback by default)."""
    uvicorn.run(
        "gateway.main:app",
        host=os.getenv("QUOTAWATCH_HOST", "127.0.0.1"),
        port=int(os.getenv("QUOTAWATCH_PORT", "8765")),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
