"""Console logging for the relay and the client, rendered by rich."""
import importlib.util
import logging
import os

import voluptuous
import websockets
from rich.console import Console
from rich.logging import RichHandler
from rich.traceback import install

console = Console()


def wrapped_libraries():
    """Libraries whose frames are folded out of rich tracebacks."""
    suppress = [websockets, voluptuous]
    # PyGObject only comes with the gst extra; suppress it by path so
    # that logging setup never imports it
    spec = importlib.util.find_spec("gi")
    if spec is not None and spec.submodule_search_locations:
        suppress.extend(spec.submodule_search_locations)
    return suppress


def setup_logging(level=None):
    suppress = wrapped_libraries()
    handler = RichHandler(
        level=level or os.environ.get("LOGLEVEL", "INFO"),
        console=console,
        rich_tracebacks=True,
        tracebacks_suppress=suppress,
    )
    logging.basicConfig(level="NOTSET", format="%(message)s", datefmt="[%X]", handlers=[handler])
    # handshakes are already logged as [NEW CONNECTION]
    logging.getLogger("websockets").setLevel(logging.WARNING)

    install(console=console, suppress=suppress)
