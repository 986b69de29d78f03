"""
API server entry point.

    python -m quotagate.serve --port 8000
"""
import argparse

import uvicorn


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the quotagate API server.")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--workers", type=int, default=1)
    args = parser.parse_args()

    try:
        uvicorn.run(
            "quotagate.main:app",
            host=args.host,
            port=args.port,
            workers=args.workers,
            reload=False,
            log_level="info",
            access_log=False,
        )
    except KeyboardInterrupt:
        print("\n[quotagate] Shutting down...")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
