"""Native compiler invocation.

Compilers are resolved per family from the configuration, then from an
environment variable, then from ``PATH``. The subprocess runner is injectable
so builds can run against a fake toolchain.
"""

import os
import shutil
import subprocess
import tempfile
from collections.abc import Callable
from pathlib import Path

from loguru import logger

from fslc.compiler.constants import (
    BINARY_EXTENSIONS,
    GENERATED_EXTENSIONS,
    PLATFORM_LANGUAGE,
)
from fslc.compiler.errors import CompilerError, ToolchainError
from fslc.compiler.models import Language, Platform, Stage
from fslc.compiler.target import GeneratedShader

Runner = Callable[[list[str]], subprocess.CompletedProcess]

# Compiler family -> (default executable, environment override)
COMPILER_FAMILIES: dict[str, tuple[str, str]] = {
    "dxc": ("dxc", "FSLC_DXC"),
    "glslang": ("glslangValidator", "FSLC_GLSLANG"),
    "xcrun": ("xcrun", "FSLC_XCRUN"),
}

LANGUAGE_FAMILIES: dict[Language, str] = {
    Language.HLSL: "dxc",
    Language.GLSL: "glslang",
    Language.MSL: "xcrun",
}

DXC_PROFILES = {Stage.VERTEX: "vs_6_6", Stage.FRAGMENT: "ps_6_6", Stage.COMPUTE: "cs_6_6"}
GLSLANG_STAGES = {Stage.VERTEX: "vert", Stage.FRAGMENT: "frag", Stage.COMPUTE: "comp"}
METAL_SDKS = {Platform.MACOS: "macosx", Platform.IOS: "iphoneos"}


def run_process(command: list[str]) -> subprocess.CompletedProcess:
    """Run a compiler command, capturing its output as text."""
    return subprocess.run(
        command,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )


class Toolchain:
    """Resolves and runs the native compilers of every platform."""

    def __init__(
        self,
        compilers: dict[str, str] | None = None,
        runner: Runner | None = None,
        debug: bool = False,
    ):
        """Initialize the toolchain.

        Args:
            compilers: Configured executables by family (``dxc``, ``glslang``, ``xcrun``)
            runner: Subprocess runner; defaults to ``subprocess.run``
            debug: Ask the compilers to keep debug information
        """
        self.compilers = dict(compilers or {})
        self.runner = runner or run_process
        self.debug = debug

    def resolve(self, platform: Platform) -> str:
        """Executable of the compiler family used by a platform.

        Raises:
            ToolchainError: If the compiler cannot be found
        """
        family = LANGUAGE_FAMILIES[PLATFORM_LANGUAGE[platform]]
        executable, env_key = COMPILER_FAMILIES[family]

        configured = self.compilers.get(family)
        if configured:
            return configured
        if os.environ.get(env_key):
            return os.environ[env_key]
        found = shutil.which(executable)
        if found:
            return found
        raise ToolchainError(
            f"{executable} not found for {platform.name}; set compilers.{family} "
            f"in the configuration or the {env_key} environment variable"
        )

    def commands(
        self,
        platform: Platform,
        generated: GeneratedShader,
        source: Path,
        output: Path,
    ) -> list[list[str]]:
        """Command lines compiling ``source`` into ``output``."""
        executable = self.resolve(platform)
        stage = generated.stage
        match PLATFORM_LANGUAGE[platform]:
            case Language.HLSL:
                command = [
                    executable,
                    "-T",
                    DXC_PROFILES[stage],
                    "-E",
                    generated.entry_name,
                    "-Fo",
                    str(output),
                    str(source),
                ]
                if self.debug:
                    command[1:1] = ["-Zi", "-Qembed_debug"]
                return [command]
            case Language.GLSL:
                command = [
                    executable,
                    "-V",
                    "-S",
                    GLSLANG_STAGES[stage],
                    "--target-env",
                    "vulkan1.1",
                    "-o",
                    str(output),
                    str(source),
                ]
                if self.debug:
                    command.insert(1, "-g")
                return [command]
        air = output.with_suffix(".air")
        sdk = METAL_SDKS[platform]
        compile_command = [executable, "-sdk", sdk, "metal", "-c", str(source), "-o", str(air)]
        if self.debug:
            compile_command.append("-gline-tables-only")
        link_command = [executable, "-sdk", sdk, "metallib", str(air), "-o", str(output)]
        return [compile_command, link_command]

    def compile(self, generated: GeneratedShader, name: str = "shader") -> bytes:
        """Compile a generated shader and return the native binary.

        Args:
            generated: Generated shader source
            name: Base name for the intermediate files

        Returns:
            Bytes of the compiled binary

        Raises:
            ToolchainError: If the compiler cannot be found
            CompilerError: If the compiler fails; its output is kept verbatim
        """
        platform = generated.platform
        language = PLATFORM_LANGUAGE[platform]
        with tempfile.TemporaryDirectory(prefix="fslc-") as workdir:
            source = Path(workdir) / f"{name}{GENERATED_EXTENSIONS[language]}"
            output = Path(workdir) / f"{name}{BINARY_EXTENSIONS[language]}"
            source.write_text(generated.source, encoding="utf-8")

            for command in self.commands(platform, generated, source, output):
                logger.debug(f"Running {' '.join(command)}")
                try:
                    result = self.runner(command)
                except OSError as e:
                    raise ToolchainError(f"cannot run {command[0]}: {e}") from e
                if result.returncode != 0:
                    captured = "".join(
                        part for part in (result.stdout, result.stderr) if part
                    )
                    raise CompilerError(
                        f"{Path(command[0]).name} failed with exit code {result.returncode}",
                        platform=platform.name,
                        output=captured,
                    )
            try:
                return output.read_bytes()
            except OSError as e:
                raise CompilerError(
                    f"compiler produced no output file {output.name}",
                    platform=platform.name,
                ) from e

