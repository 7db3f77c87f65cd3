"""Hot-reload server.

Speaks newline-delimited JSON over TCP. A request names a configured project
and the files to rebuild::

    {"project": "demo", "paths": ["shaders/basic.fsl"]}

and gets exactly one response line back::

    {"ok": true, "binaries": {"basic.frag": "<base64 container>"}}
    {"ok": false, "error": "input file not found: shaders/missing.fsl"}

Rebuilds are serialised by one compile lock per server. A request that
cannot take the lock within ``queue_timeout`` seconds is answered with
``server busy``. Errors are reported to the client and never stop the server.
"""

import base64
import json
import socketserver
import threading
from pathlib import Path
from typing import Any

from loguru import logger

from fslc.build.driver import BuildContext, BuildDriver
from fslc.build.packer import pack
from fslc.build.toolchain import Runner
from fslc.compiler.errors import BuildError, ReloadError, ShaderError
from fslc.config import Config, ProjectSettings


class ReloadRequestHandler(socketserver.StreamRequestHandler):
    """Answers every request line of one connection."""

    server: "ReloadServer"

    def handle(self) -> None:
        while True:
            line = self.rfile.readline()
            if not line:
                break
            if not line.strip():
                continue
            try:
                request = json.loads(line.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                response = {"ok": False, "error": "invalid JSON request"}
            else:
                response = self.server.handle_request(request)
            self._send(response)

    def _send(self, payload: dict[str, Any]) -> None:
        data = json.dumps(payload, separators=(",", ":")).encode("utf-8") + b"\n"
        self.wfile.write(data)
        self.wfile.flush()


class ReloadServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(
        self,
        config: Config,
        address: tuple[str, int] | None = None,
        runner: Runner | None = None,
    ):
        """Bind the server.

        Args:
            config: Project configuration; ``config.reload`` gives the defaults
            address: (host, port) overriding the configured address
            runner: Subprocess runner handed to the toolchain
        """
        self.config = config
        self.runner = runner
        self.queue_timeout = config.reload.queue_timeout
        self.compile_lock = threading.Lock()
        address = address or (config.reload.host, config.reload.port)
        super().__init__(address, ReloadRequestHandler)

    @property
    def address(self) -> str:
        host, port = self.server_address[:2]
        return f"{host}:{port}"

    def handle_request(self, request: Any) -> dict[str, Any]:
        """Produce the response to one decoded request."""
        try:
            project_id, paths = self._validate(request)
            project = self.config.projects.get(project_id)
            if project is None:
                return {"ok": False, "error": f"unknown project '{project_id}'"}
            files = self._input_files(project, paths)
            for path in files:
                if not path.is_file():
                    return {"ok": False, "error": f"input file not found: {path}"}

            if not self.compile_lock.acquire(timeout=self.queue_timeout):
                logger.warning(f"Rejecting reload of '{project_id}': server busy")
                return {"ok": False, "error": "server busy"}
            try:
                binaries = self.rebuild(project, files)
            finally:
                self.compile_lock.release()
        except ShaderError as e:
            logger.error(f"Reload failed: {e}")
            return {"ok": False, "error": str(e)}
        except Exception as e:
            logger.exception(f"Unexpected error while handling {request!r}")
            return {"ok": False, "error": f"internal error: {e}"}

        logger.info(f"Reloaded {len(binaries)} binaries of '{project_id}'")
        return {"ok": True, "binaries": binaries}

    def rebuild(self, project: ProjectSettings, files: list[Path]) -> dict[str, str]:
        """Rebuild input files and return their containers, base64 encoded.

        Raises:
            BuildError: If any file or target failed
        """
        config = self.config.with_overrides(
            include_dirs=[*project.include_dirs, *self.config.include_dirs],
            platforms=project.platforms,
        )
        context = BuildContext.create(
            config.build_options(), compilers=config.compilers, runner=self.runner
        )
        report = BuildDriver(context).build(files)
        if not report.ok:
            raise BuildError("; ".join(report.failures))

        binaries = {}
        for file_result in report.files:
            for name, container in file_result.containers.items():
                binaries[name] = base64.b64encode(pack(container)).decode("ascii")
        return binaries

    @staticmethod
    def _validate(request: Any) -> tuple[str, list[str]]:
        if not isinstance(request, dict):
            raise ReloadError("request must be a JSON object")
        project_id = request.get("project")
        paths = request.get("paths", [])
        if not isinstance(project_id, str) or not project_id:
            raise ReloadError("request is missing 'project'")
        if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
            raise ReloadError("'paths' must be a list of strings")
        return project_id, paths

    @staticmethod
    def _input_files(project: ProjectSettings, paths: list[str]) -> list[Path]:
        """Requested paths, or every project file when none are given."""
        if paths:
            return [Path(p) for p in paths]
        return list(project.files)


def serve(config: Config, address: tuple[str, int] | None = None) -> None:
    """Run a reload server until interrupted."""
    with ReloadServer(config, address) as server:
        logger.info(f"Reload server listening on {server.address}")
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received, stopping...")
