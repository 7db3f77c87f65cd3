"""
Shader translation for the portable dialect.

This module provides the top-level interface for translating a parsed module
into native shader code for one (binary, platform, variant) triple.
"""

from loguru import logger

from fslc.compiler.conditions import specialize
from fslc.compiler.emitter import Emitter
from fslc.compiler.errors import SemanticError
from fslc.compiler.ir import IRBinary, Module
from fslc.compiler.lowering import RootSignatures, lower
from fslc.compiler.models import Feature, Platform, feature_names
from fslc.compiler.parser import parse_file, parse_source
from fslc.compiler.resolver import (
    TableResolution,
    check_binding_ceilings,
    resolve_tables,
)
from fslc.compiler.target import GeneratedShader, create_target


def declared_resources(module: Module) -> set[str]:
    """Names of every resource declared in the module's tables and fragments."""
    names = set()
    for table in module.tables:
        for item in table.items:
            names.update(d.name for d in getattr(item, "declarations", []))
    for fragment in module.fragments.values():
        names.update(d.name for d in fragment.declarations)
    return names


def binary_variants(binary: IRBinary) -> list[Feature]:
    """Flag combinations to generate for a binary.

    Raises:
        SemanticError: If two ``#variant`` lines yield the same combination
    """
    combinations = binary.variant_sets()
    seen: set[Feature] = set()
    for flags in combinations:
        if flags in seen:
            names = ", ".join(feature_names(flags)) or "no features"
            raise SemanticError(
                f"binary '{binary.output_name}' declares variant ({names}) twice",
                binary.file,
                binary.line,
            )
        seen.add(flags)
    return combinations


def generate(
    module: Module,
    binary: IRBinary,
    platform: Platform,
    features: Feature,
    *,
    resolution: TableResolution | None = None,
    root_signatures: RootSignatures | None = None,
) -> GeneratedShader:
    """Generate native code for one binary, platform and variant.

    Args:
        module: Parsed module
        binary: Binary declaration of the module to generate
        platform: Target platform
        features: Feature flag set of the variant
        resolution: Tables resolved beforehand; resolved here when omitted
        root_signatures: Project-wide graphics/compute root signatures

    Returns:
        The generated shader

    Raises:
        DialectSyntaxError: If a conditional block is malformed
        SemanticError: If the entry point or its table is invalid
        UnsupportedOperationError: If the shader has no mapping on the platform
    """
    if resolution is None:
        resolution = resolve_tables(module)

    shader = specialize(module, binary, platform, features)
    convention = lower(
        shader,
        resolution.tables,
        table_errors=resolution.errors,
        declared_resources=declared_resources(module),
        root_signatures=root_signatures,
    )
    if convention.table is not None:
        check_binding_ceilings(convention.table, platform, features)

    logger.debug(
        f"Generating '{binary.output_name}' for {platform.name} "
        f"[{', '.join(feature_names(features))}]"
    )
    return Emitter(create_target(platform, features)).generate(shader, convention)


__all__ = [
    "GeneratedShader",
    "RootSignatures",
    "TableResolution",
    "binary_variants",
    "declared_resources",
    "generate",
    "parse_file",
    "parse_source",
    "resolve_tables",
]
