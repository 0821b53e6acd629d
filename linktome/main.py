"""
linktome - command-line entry point.

    python -m linktome.main serve     run the API with uvicorn
    python -m linktome.main sweep     run the maintenance jobs once
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from dotenv import load_dotenv

from linktome.config import AuthConfig, get_settings
from linktome.maintenance import run_all
from linktome.services import create_services


async def sweep() -> dict[str, int]:
    """Run every maintenance job against the configured storage."""
    services = create_services(AuthConfig.from_settings(get_settings()))
    results = await run_all(services)
    await services.tasks.drain()
    return results


def serve() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "linktome.api.app:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    load_dotenv()

    parser = argparse.ArgumentParser(prog="linktome")
    parser.add_argument("command", choices=["serve", "sweep"])
    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "sweep":
        results = asyncio.run(sweep())
        for job, count in results.items():
            print(f"  {job}: {count}")
    else:
        serve()


if __name__ == "__main__":
    main()
