"""CLI entry point for browser-control.

Runs the control server (default), prints the configuration
(``browser-control config``) or resets it (``browser-control config reset``).
"""

from __future__ import annotations

import sys


def main() -> None:
    if len(sys.argv) > 1 and sys.argv[1] == "config":
        from .config import dump_config, load_config, reset_config

        if len(sys.argv) > 2 and sys.argv[2] == "reset":
            config = reset_config()
        else:
            config = load_config()
        print(dump_config(config), end="")
    elif len(sys.argv) > 1 and sys.argv[1] == "--version":
        from . import __version__

        print(f"browser-control {__version__}")
    else:
        import asyncio

        from dotenv import load_dotenv

        load_dotenv()
        try:
            code = asyncio.run(serve())
        except KeyboardInterrupt:
            code = 0
        sys.exit(code)


async def serve() -> int:
    """Run the control server until SIGINT/SIGTERM or until it exits."""
    import asyncio
    import contextlib
    import logging
    import signal

    from .config import load_config
    from .logging_config import setup_logging
    from .server import ControlServer

    config = load_config()
    setup_logging(config.logging)
    logger = logging.getLogger(__name__)

    control = ControlServer(config)
    state = await control.start()
    if state is None or state.task is None:
        logger.error("Browser control server is not running locally")
        return 1

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_requested.set)

    waiter = asyncio.create_task(stop_requested.wait())
    try:
        await asyncio.wait({waiter, state.task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        await control.stop()
    return 0


if __name__ == "__main__":
    main()
