import argparse

import uvicorn

from agencychat.config import HOST, PORT, RELOAD_ENABLED


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the AgencyChat HTTP/WebSocket server")
    parser.add_argument("--host", default=HOST, help="Bind host")
    parser.add_argument("--port", type=int, default=PORT, help="Bind port")
    parser.add_argument(
        "--reload",
        action="store_true",
        default=RELOAD_ENABLED,
        help="Enable auto-reload for development",
    )
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    args = parser.parse_args()

    uvicorn.run(
        "agencychat.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
        timeout_graceful_shutdown=3,
    )


if __name__ == "__main__":
    main()
