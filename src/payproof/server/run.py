"""Run the Payproof API under uvicorn."""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from typing import Mapping, Optional

import uvicorn

APP_PATH = "payproof.server.app:app"


@dataclass(frozen=True)
class ServerOptions:
    host: str = "127.0.0.1"
    port: int = 8000
    reload: bool = False
    # Stop after this many seconds; used for smoke runs.
    duration: Optional[float] = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> "ServerOptions":
        raw_port = environ.get("PAYPROOF_SERVER_PORT", "8000")
        try:
            port = int(raw_port)
        except ValueError as exc:
            raise SystemExit(f"Invalid PAYPROOF_SERVER_PORT '{raw_port}': {exc}") from exc

        duration: Optional[float] = None
        if raw_duration := environ.get("PAYPROOF_SERVER_DURATION"):
            try:
                duration = float(raw_duration)
            except ValueError as exc:
                raise SystemExit(
                    f"Invalid PAYPROOF_SERVER_DURATION '{raw_duration}': {exc}"
                ) from exc
            if duration <= 0:
                raise SystemExit("PAYPROOF_SERVER_DURATION must be greater than 0 when provided.")

        options = cls(
            host=environ.get("PAYPROOF_SERVER_HOST", "127.0.0.1"),
            port=port,
            reload=environ.get("RELOAD") == "1",
            duration=duration,
        )
        if options.reload and options.duration is not None:
            raise SystemExit("Use RELOAD=0 when specifying PAYPROOF_SERVER_DURATION.")
        return options


async def _serve_for(server: uvicorn.Server, duration: float) -> None:
    async def _stop_later() -> None:
        await asyncio.sleep(duration)
        server.should_exit = True

    stopper = asyncio.create_task(_stop_later())
    try:
        await server.serve()
    finally:
        stopper.cancel()


def main() -> None:
    """Entry point for the ``payproof-server`` console script."""

    options = ServerOptions.from_env()
    if options.reload:
        uvicorn.run(APP_PATH, host=options.host, port=options.port, reload=True)
        return

    server = uvicorn.Server(uvicorn.Config(APP_PATH, host=options.host, port=options.port))
    if options.duration is not None:
        asyncio.run(_serve_for(server, options.duration))
    else:
        server.run()


if __name__ == "__main__":
    main()
