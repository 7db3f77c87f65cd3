"""Portable shader translator producing HLSL, GLSL and MSL."""

from fslc.compiler import generate, parse_file, parse_source, resolve_tables
from fslc.compiler.models import Feature, Platform, Stage

__version__ = "0.1.0"


__all__ = [
    "Feature",
    "Platform",
    "Stage",
    "generate",
    "parse_file",
    "parse_source",
    "resolve_tables",
]
