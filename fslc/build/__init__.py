"""Build pipeline: native compilation, variant packing and incremental cache."""

from fslc.build.driver import (
    BuildContext,
    BuildDriver,
    BuildOptions,
    BuildReport,
    FileResult,
    TargetResult,
)
from fslc.build.packer import VariantContainer, enumerate_variants, lookup, pack, unpack
from fslc.build.toolchain import Toolchain

__all__ = [
    "BuildContext",
    "BuildDriver",
    "BuildOptions",
    "BuildReport",
    "FileResult",
    "TargetResult",
    "Toolchain",
    "VariantContainer",
    "enumerate_variants",
    "lookup",
    "pack",
    "unpack",
]
