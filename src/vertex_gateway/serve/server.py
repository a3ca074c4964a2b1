"""Launch the gateway under uvicorn."""
from __future__ import annotations
import argparse
import os

import uvicorn


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(description="Run the Vertex AI gateway")
    ap.add_argument("--host", default=os.getenv("GATEWAY_HOST", "0.0.0.0"))
    ap.add_argument("--port", type=int, default=int(os.getenv("GATEWAY_PORT", "3001")))
    ap.add_argument("--log-level", default=os.getenv("GATEWAY_LOG_LEVEL", "info"))
    args = ap.parse_args(argv)

    # the app module configures logging from the environment when uvicorn imports it
    os.environ["GATEWAY_LOG_LEVEL"] = args.log_level.upper()
    uvicorn.run(
        "vertex_gateway.serve.fastapi_app:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
