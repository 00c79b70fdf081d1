"""Two-party call-setup signaling: a websocket relay and a peer session controller."""

__version__ = "0.1.0"
