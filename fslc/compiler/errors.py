"""
Exceptions and error handling for the shader translator.

This module defines the exception taxonomy raised during translation and
building. Every error carries an optional source location so the build driver
can report it in the usual ``file(line)`` form.
"""

import os


class ShaderError(Exception):
    """Base class for all translator errors.

    The class tracks the file and line number in the user's shader source where
    the error originated and appends them to the message.

    Examples:
        >>> raise ShaderError("Unknown marker: FOO", file="a.fsl", line=3)
        ShaderError: Unknown marker: FOO in a.fsl at line 3
    """

    def __init__(
        self, message: str, file: str | None = None, line: int | None = None
    ):
        """Initialize the exception with a message and optional location.

        Args:
            message: The error message
            file: Source file where the error occurred
            line: 1-based line number in ``file``
        """
        self.message = message
        self.file = file
        self.line = line

        location_info = ""
        if self.file:
            location_info = f" in {os.path.basename(self.file)}"
            if self.line:
                location_info += f" at line {self.line}"

        super().__init__(f"{message}{location_info}")

    def with_location(self, file: str | None, line: int | None) -> "ShaderError":
        """Create a copy of this error bound to a different location.

        Args:
            file: Source file to associate with the error
            line: Line number to associate with the error

        Returns:
            A new error of the same type with the updated location
        """
        return type(self)(self.message, file=file, line=line)


class DialectSyntaxError(ShaderError):
    """Malformed dialect construct. Aborts the offending file."""


class SemanticError(ShaderError):
    """Well-formed but invalid declaration. Aborts the offending table or binary."""


class UnsupportedOperationError(ShaderError):
    """Operation with no native mapping on a target. Aborts that target only."""


class ToolchainError(ShaderError):
    """A required native compiler could not be resolved for a platform."""


class CompilerError(ShaderError):
    """A native compiler subprocess failed.

    The captured compiler output is kept verbatim in ``output``.
    """

    def __init__(
        self,
        message: str,
        file: str | None = None,
        line: int | None = None,
        platform: str | None = None,
        output: str = "",
    ):
        self.platform = platform
        self.output = output
        prefix = f"[{platform}] " if platform else ""
        super().__init__(f"{prefix}{message}", file=file, line=line)
        self.message = message
        # Compiler output goes after the location so it stays verbatim
        if output:
            self.args = (f"{self.args[0]}\n{output}",)

    def with_location(self, file: str | None, line: int | None) -> "CompilerError":
        return CompilerError(
            self.message, file=file, line=line, platform=self.platform, output=self.output
        )


class VariantNotFoundError(ShaderError):
    """No variant in a container matches the requested key exactly."""


class ContainerFormatError(ShaderError):
    """A variant container is malformed or contains duplicate keys."""


class BuildError(ShaderError):
    """Invalid build plan (for example two binaries sharing an output path)."""


class ConfigError(ShaderError):
    """Invalid project configuration file or option value."""


class ReloadError(ShaderError):
    """The reload server rejected a request or could not be reached."""
