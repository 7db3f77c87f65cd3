"""Resource table resolution.

Assigns every declaration in a shader resource table a stable index: a single
running counter over the table's sets in declaration order, where arrays
advance the counter by their length. Shared set fragments are resolved once,
on first inclusion, and reused verbatim by every table that includes them.
"""

from collections import Counter
from dataclasses import dataclass, field

from loguru import logger

from fslc.compiler.constants import (
    ARGUMENT_BUFFER_PROMOTING_FEATURES,
    BINDING_CEILINGS,
    PLATFORM_LANGUAGE,
)
from fslc.compiler.errors import SemanticError
from fslc.compiler.ir import Module
from fslc.compiler.models import (
    ConstantBufferKind,
    Feature,
    Language,
    Platform,
    ResolvedResource,
    ResolvedSet,
    ResolvedTable,
    ResourceDeclaration,
    ResourceSet,
    SamplerKind,
    SetReference,
    ShaderResourceTable,
    TextureKind,
    UpdateFrequency,
)


@dataclass
class TableResolution:
    """Outcome of resolving every table of a module.

    A table that fails resolution appears in ``errors`` only; the others are
    still resolved.
    """

    tables: dict[str, ResolvedTable] = field(default_factory=dict)
    errors: dict[str, SemanticError] = field(default_factory=dict)


def _frequency(name: str, table: ShaderResourceTable, file, line) -> UpdateFrequency:
    try:
        return UpdateFrequency[name]
    except KeyError:
        known = ", ".join(f.name for f in UpdateFrequency)
        raise SemanticError(
            f"unknown update frequency '{name}' in table '{table.name}' "
            f"(expected one of {known})",
            file,
            line,
        ) from None


def _check_declaration(
    declaration: ResourceDeclaration,
    resource_set: ResourceSet,
    table: ShaderResourceTable,
    first_set: bool,
    names: dict[str, ResourceDeclaration],
) -> None:
    where = (declaration.file, declaration.line)
    if declaration.frequency != resource_set.name:
        raise SemanticError(
            f"declaration '{declaration.name}' names frequency "
            f"'{declaration.frequency}' but is inside set '{resource_set.name}'",
            *where,
        )
    length = declaration.array_length
    if isinstance(length, bool) or not isinstance(length, int) or length <= 0:
        raise SemanticError(
            f"array size of '{declaration.name}' must be a positive integer, "
            f"got '{length}'",
            *where,
        )
    if isinstance(declaration.kind, SamplerKind) and not first_set:
        raise SemanticError(
            f"sampler '{declaration.name}' must be declared in the first set of "
            f"table '{table.name}', not in '{resource_set.name}'",
            *where,
        )
    if declaration.name in names:
        raise SemanticError(
            f"duplicate declaration '{declaration.name}' in table '{table.name}'",
            *where,
        )
    names[declaration.name] = declaration


def _assign_indices(
    resource_set: ResourceSet, frequency: UpdateFrequency, base_index: int
) -> ResolvedSet:
    resources = []
    index = base_index
    for declaration in resource_set.declarations:
        resources.append(
            ResolvedResource(declaration, resource_set.name, frequency.value, index)
        )
        index += declaration.array_length
    return ResolvedSet(
        name=resource_set.name,
        ordinal=frequency.value,
        resources=tuple(resources),
        base_index=base_index,
        is_fragment=resource_set.is_fragment,
    )


def resolve_table(
    table: ShaderResourceTable,
    fragments: dict[str, ResourceSet] | None = None,
    resolved_fragments: dict[str, ResolvedSet] | None = None,
    fragment_owners: dict[str, str] | None = None,
) -> ResolvedTable:
    """Assign indices to every declaration of a table.

    Args:
        table: Table to resolve
        fragments: Shared set fragments visible to the table, by name
        resolved_fragments: Fragments already resolved by earlier tables; the
            fragments this table resolves first are added on success
        fragment_owners: Name of the table that resolved each fragment first;
            updated alongside ``resolved_fragments``

    Returns:
        The resolved table

    Raises:
        SemanticError: If the table violates a placement or naming rule
    """
    fragments = fragments or {}
    if resolved_fragments is None:
        resolved_fragments = {}
    if fragment_owners is None:
        fragment_owners = {}

    counter = 0
    names: dict[str, ResourceDeclaration] = {}
    seen: set[str] = set()
    previous: UpdateFrequency | None = None
    sets: list[ResolvedSet] = []
    new_fragments: dict[str, ResolvedSet] = {}

    for position, item in enumerate(table.items):
        if isinstance(item, SetReference):
            resource_set = fragments.get(item.name)
            if resource_set is None:
                raise SemanticError(
                    f"undefined set fragment '{item.name}' used by table '{table.name}'",
                    item.file,
                    item.line,
                )
        else:
            resource_set = item
        where = (item.file, item.line)

        frequency = _frequency(resource_set.name, table, *where)
        if resource_set.name in seen:
            raise SemanticError(
                f"set '{resource_set.name}' appears twice in table '{table.name}'",
                *where,
            )
        if previous is not None and frequency.value <= previous.value:
            raise SemanticError(
                f"set '{resource_set.name}' is out of frequency order in table "
                f"'{table.name}' (it follows '{previous.name}')",
                *where,
            )
        seen.add(resource_set.name)
        previous = frequency

        for declaration in resource_set.declarations:
            _check_declaration(declaration, resource_set, table, position == 0, names)

        if isinstance(item, SetReference):
            cached = resolved_fragments.get(item.name) or new_fragments.get(item.name)
            if cached is None:
                resolved = _assign_indices(resource_set, frequency, counter)
                new_fragments[item.name] = resolved
            elif cached.base_index != counter:
                owner = fragment_owners.get(item.name, table.name)
                raise SemanticError(
                    f"set fragment '{item.name}' is included at index {counter} in "
                    f"table '{table.name}' but was resolved at index "
                    f"{cached.base_index} by table '{owner}'",
                    *where,
                )
            else:
                resolved = cached
        else:
            resolved = _assign_indices(resource_set, frequency, counter)

        sets.append(resolved)
        counter = resolved.base_index + resolved.element_count

    resolved_fragments.update(new_fragments)
    fragment_owners.update(dict.fromkeys(new_fragments, table.name))
    logger.debug(
        f"Resolved SRT '{table.name}': {len(sets)} sets, {counter} bindable elements"
    )
    return ResolvedTable(table.name, sets)


def resolve_tables(module: Module) -> TableResolution:
    """Resolve every table of a module, isolating failures per table.

    Tables are resolved in source order, so the first table including a set
    fragment fixes its base index and a later table disagreeing with it is
    the one that fails.

    Args:
        module: Parsed module

    Returns:
        Resolved tables and per-table semantic errors
    """
    resolution = TableResolution()
    resolved_fragments: dict[str, ResolvedSet] = {}
    fragment_owners: dict[str, str] = {}
    for table in module.tables:
        try:
            resolution.tables[table.name] = resolve_table(
                table, module.fragments, resolved_fragments, fragment_owners
            )
        except SemanticError as e:
            logger.debug(f"SRT '{table.name}' failed to resolve: {e}")
            resolution.errors[table.name] = e
    return resolution


def is_argument_buffer_member(
    declaration: ResourceDeclaration, features: Feature
) -> bool:
    """Whether a resource lives in its set's Metal argument buffer.

    Samplers and read-write resources are bound loose; ``NO_AB`` makes every
    resource loose; ``ICB`` and ``RAYTRACING`` promote everything except
    samplers into argument buffers.
    """
    if isinstance(declaration.kind, SamplerKind):
        return False
    if features & ARGUMENT_BUFFER_PROMOTING_FEATURES:
        return True
    if Feature.NO_AB in features:
        return False
    return not declaration.read_write


def slot_class(
    declaration: ResourceDeclaration, language: Language, features: Feature
) -> str | None:
    """Binding slot class a resource counts against, or None if it uses none."""
    kind = declaration.kind
    if language == Language.MSL:
        if is_argument_buffer_member(declaration, features):
            return None
        match kind:
            case SamplerKind():
                return "sampler"
            case TextureKind():
                return "texture"
        return "buffer"

    match kind:
        case SamplerKind():
            return "sampler"
        case ConstantBufferKind():
            return "cbuffer"
    return "read_write" if declaration.read_write else "read_only"


def check_binding_ceilings(
    table: ResolvedTable, platform: Platform, features: Feature
) -> None:
    """Check a table against the hard per-stage ceilings of a platform.

    Arrays count with their full length. On Metal only loose resources and
    the argument buffers themselves take fixed slots, so ``ICB`` and
    ``RAYTRACING`` lift every ceiling except the sampler one.

    Raises:
        SemanticError: If a slot class exceeds its ceiling
    """
    language = PLATFORM_LANGUAGE[platform]
    ceilings = BINDING_CEILINGS[platform]

    counts: Counter[str] = Counter()
    argument_buffers = set()
    for resource in table.resources:
        cls = slot_class(resource.declaration, language, features)
        if cls is None:
            argument_buffers.add(resource.set_name)
        else:
            counts[cls] += resource.count
    if language == Language.MSL:
        counts["buffer"] += len(argument_buffers)

    for cls, limit in ceilings.items():
        if counts[cls] > limit:
            message = (
                f"table '{table.name}' exceeds the {platform.name} {cls} binding "
                f"ceiling ({counts[cls]} > {limit})"
            )
            if language == Language.MSL and cls != "sampler":
                message += "; declare FT_ICB or FT_RAYTRACING to use argument buffers"
            raise SemanticError(message)
