"""Hot-reload client."""

import base64
import json
import socket
from typing import Any

from loguru import logger

from fslc.compiler.errors import ReloadError
from fslc.config import DEFAULT_RELOAD_PORT


class ReloadClient:
    """Sends reload requests to a running reload server."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = DEFAULT_RELOAD_PORT,
        timeout: float | None = 60.0,
    ):
        self.host = host
        self.port = port
        self.timeout = timeout

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def request(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Send one request line and read the response line.

        Raises:
            ReloadError: If the server cannot be reached or answers garbage
        """
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        except OSError as e:
            raise ReloadError(f"reload server is not running at {self.address}") from e

        with sock, sock.makefile("rb") as reader:
            data = json.dumps(payload, separators=(",", ":")).encode("utf-8") + b"\n"
            try:
                sock.sendall(data)
                line = reader.readline()
            except OSError as e:
                raise ReloadError(f"connection to {self.address} failed: {e}") from e

        if not line:
            raise ReloadError(f"reload server at {self.address} closed the connection")
        try:
            response = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ReloadError(f"invalid response from {self.address}: {e}") from e
        if not isinstance(response, dict):
            raise ReloadError(f"invalid response from {self.address}")
        return response

    def reload(self, project: str, paths: list[str]) -> dict[str, bytes]:
        """Ask the server to rebuild files of a project.

        Args:
            project: Project id from the server configuration
            paths: Input files to rebuild; empty rebuilds the whole project

        Returns:
            Packed variant container of every rebuilt binary, by binary name

        Raises:
            ReloadError: If the server is unreachable or the rebuild failed
        """
        logger.debug(f"Requesting reload of '{project}' from {self.address}")
        response = self.request({"project": project, "paths": list(paths)})
        if not response.get("ok"):
            raise ReloadError(str(response.get("error", "unknown error")))
        return {
            name: base64.b64decode(data)
            for name, data in response.get("binaries", {}).items()
        }
