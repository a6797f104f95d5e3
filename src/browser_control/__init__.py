"""browser-control - a loopback HTTP control plane for a Chromium-family browser."""

__version__ = "0.1.0"
