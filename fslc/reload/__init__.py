"""Hot-reload server and client speaking newline-delimited JSON over TCP."""

from fslc.reload.client import ReloadClient
from fslc.reload.server import ReloadServer, serve

__all__ = ["ReloadClient", "ReloadServer", "serve"]
