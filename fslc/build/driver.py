"""Build driver.

Runs the translation pipeline for a list of input files on a thread pool:
parse, resolve tables, generate every (binary, platform, variant), compile,
pack and write artifacts. Failures are isolated at the narrowest level that
contains them and collected in a BuildReport.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from fslc.build.artifacts import OutputRegistry, atomic_write
from fslc.build.cache import BuildCache, compute_key
from fslc.build.packer import CONTAINER_EXTENSION, VariantContainer, write_container
from fslc.build.toolchain import Runner, Toolchain
from fslc.compiler import binary_variants, generate
from fslc.compiler.conditions import platform_features
from fslc.compiler.constants import (
    BINARY_EXTENSIONS,
    GENERATED_EXTENSIONS,
    PLATFORM_LANGUAGE,
)
from fslc.compiler.crossref import crossref_data, crossref_header, crossref_json
from fslc.compiler.errors import (
    BuildError,
    CompilerError,
    DialectSyntaxError,
    SemanticError,
    ShaderError,
    ToolchainError,
)
from fslc.compiler.ir import IRBinary, Module
from fslc.compiler.lowering import RootSignatures
from fslc.compiler.models import (
    Feature,
    Platform,
    ResolvedTable,
    ShaderVariant,
    feature_names,
    feature_suffix,
)
from fslc.compiler.parser import parse_file
from fslc.compiler.resolver import TableResolution, resolve_tables

# =============================================================================
# Options and context
# =============================================================================


@dataclass
class BuildOptions:
    """Settings of one build invocation."""

    platforms: list[Platform] = field(default_factory=lambda: list(Platform))
    output_dir: Path = Path("out")
    binary_dir: Path = Path("out/bin")
    reflection_dir: Path = Path("out/reflection")
    cache_dir: Path = Path(".fslc-cache")
    include_dirs: list[Path] = field(default_factory=list)
    jobs: int = 1
    incremental: bool = False
    compile: bool = True
    debug: bool = False
    root_signatures: RootSignatures = field(default_factory=RootSignatures)

    def cache_arguments(self) -> dict[str, Any]:
        """Invocation arguments that change the produced artifacts."""
        return {
            "platforms": sorted(p.name for p in self.platforms),
            "output_dir": str(Path(self.output_dir).resolve()),
            "binary_dir": str(Path(self.binary_dir).resolve()),
            "reflection_dir": str(Path(self.reflection_dir).resolve()),
            "include_dirs": [str(Path(d).resolve()) for d in self.include_dirs],
            "compile": self.compile,
            "debug": self.debug,
            "root_signatures": [
                self.root_signatures.graphics,
                self.root_signatures.compute,
            ],
        }


@dataclass
class BuildContext:
    """Everything a build job needs; passed explicitly instead of globals."""

    options: BuildOptions
    toolchain: Toolchain
    cache: BuildCache
    outputs: OutputRegistry = field(default_factory=OutputRegistry)

    @classmethod
    def create(
        cls,
        options: BuildOptions,
        compilers: dict[str, str] | None = None,
        runner: Runner | None = None,
    ) -> "BuildContext":
        return cls(
            options=options,
            toolchain=Toolchain(compilers, runner=runner, debug=options.debug),
            cache=BuildCache(options.cache_dir),
        )


# =============================================================================
# Results
# =============================================================================


@dataclass
class TargetResult:
    """Outcome of one (binary, platform, variant)."""

    binary: str
    platform: Platform | None
    features: Feature
    error: str | None = None
    error_type: str | None = None
    outputs: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def describe(self) -> str:
        platform = self.platform.name if self.platform else "all platforms"
        names = ", ".join(feature_names(self.features))
        return f"{self.binary} [{platform}{': ' + names if names else ''}]"


@dataclass
class FileResult:
    """Outcome of one input file."""

    path: str
    status: str = "built"  # built | cached | failed
    error: str | None = None
    targets: list[TargetResult] = field(default_factory=list)
    tables: dict[str, ResolvedTable] = field(default_factory=dict)
    containers: dict[str, VariantContainer] = field(default_factory=dict)
    outputs: list[str] = field(default_factory=list)
    # Cache row stored by the coordinator once reflection files are written
    cache_key: str | None = None
    includes: list[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.status == "failed" or any(not t.ok for t in self.targets)


@dataclass
class BuildReport:
    """Per-file and per-target status of a build."""

    files: list[FileResult] = field(default_factory=list)
    reflection_outputs: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not any(f.failed for f in self.files)

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    @property
    def failures(self) -> list[str]:
        messages = []
        for file_result in self.files:
            if file_result.status == "failed":
                messages.append(f"{file_result.path}: {file_result.error}")
            for target in file_result.targets:
                if not target.ok:
                    messages.append(
                        f"{file_result.path}: {target.describe()}: {target.error}"
                    )
        return messages

    def summary(self) -> str:
        counts = {"built": 0, "cached": 0, "failed": 0}
        for file_result in self.files:
            counts["failed" if file_result.failed else file_result.status] += 1
        targets = [t for f in self.files for t in f.targets]
        passed = sum(1 for t in targets if t.ok)
        return (
            f"{counts['built']} built, {counts['cached']} up to date, "
            f"{counts['failed']} failed ({passed}/{len(targets)} targets ok)"
        )


# =============================================================================
# Output layout
# =============================================================================


def generated_path(
    options: BuildOptions, platform: Platform, output_name: str, features: Feature
) -> Path:
    """Path of the generated source of one (binary, platform, variant)."""
    suffix = feature_suffix(features)
    stem = f"{output_name}_{suffix}" if suffix else output_name
    extension = GENERATED_EXTENSIONS[PLATFORM_LANGUAGE[platform]]
    return Path(options.output_dir) / platform.name / f"{stem}{extension}"


def compiled_path(options: BuildOptions, platform: Platform, output_name: str) -> Path:
    """Path of the compiled binary of a binary without ``#variant`` lines."""
    extension = BINARY_EXTENSIONS[PLATFORM_LANGUAGE[platform]]
    return Path(options.binary_dir) / platform.name / f"{output_name}{extension}"


def container_path(options: BuildOptions, output_name: str) -> Path:
    return Path(options.binary_dir) / f"{output_name}{CONTAINER_EXTENSION}"


def reflection_paths(options: BuildOptions, table_name: str) -> tuple[Path, Path]:
    base = Path(options.reflection_dir)
    return base / f"{table_name}.srt.h", base / f"{table_name}.srt.json"


# =============================================================================
# Driver
# =============================================================================


class BuildDriver:
    """Builds input files concurrently and reports per-target status."""

    def __init__(self, context: BuildContext):
        self.context = context
        self.options = context.options

    def build(self, files: list[str] | list[Path]) -> BuildReport:
        """Build every input file.

        Args:
            files: Dialect source files

        Returns:
            Report with one FileResult per distinct input, in input order
        """
        paths = list(dict.fromkeys(Path(f).resolve() for f in files))
        self.context.outputs.clear()
        results: dict[Path, FileResult] = {}

        jobs = max(1, self.options.jobs)
        logger.info(f"Building {len(paths)} files with {jobs} jobs")
        with ThreadPoolExecutor(max_workers=jobs) as executor:
            futures = {executor.submit(self.build_file, path): path for path in paths}
            try:
                for future in as_completed(futures):
                    results[futures[future]] = future.result()
            except KeyboardInterrupt:
                logger.warning("Build interrupted, cancelling pending jobs")
                for future in futures:
                    future.cancel()
                raise

        report = BuildReport(files=[results[p] for p in paths])
        report.reflection_outputs = self._write_reflection(report.files)
        self._store_rows(report.files)
        logger.info(f"Build finished: {report.summary()}")
        return report

    def _store_rows(self, files: list[FileResult]) -> None:
        """Record finished files in the cache.

        Rows are stored only after the reflection files they list exist, so an
        interrupted build never leaves a row pointing at a stale table.
        """
        for file_result in files:
            if file_result.cache_key is None or file_result.failed:
                continue
            self.context.cache.store(
                Path(file_result.path),
                file_result.cache_key,
                file_result.includes,
                file_result.outputs,
            )

    def build_file(self, path: Path) -> FileResult:
        """Build one input file. Runs on a worker thread."""
        options = self.options
        cache = self.context.cache
        arguments = options.cache_arguments()
        result = FileResult(path=str(path))

        if options.incremental and cache.is_fresh(path, arguments):
            logger.info(f"{path.name}: up to date")
            result.status = "cached"
            return result

        logger.info(f"Building {path.name}")
        # Outputs are about to change; the old row must not survive an interruption
        cache.invalidate(path)
        try:
            module = parse_file(path, options.include_dirs)
            resolution = resolve_tables(module)
            for name, error in resolution.errors.items():
                logger.error(f"{path.name}: table '{name}': {error}")
            result.tables = resolution.tables

            for binary in module.binaries:
                self._build_binary(module, binary, resolution, result)
        except DialectSyntaxError as e:
            logger.error(f"{path.name}: {e}")
            result.status = "failed"
            result.error = str(e)
            result.tables = {}
            return result
        result.outputs.extend(o for t in result.targets for o in t.outputs)

        for table_name in result.tables:
            result.outputs.extend(str(p) for p in reflection_paths(options, table_name))

        if not result.failed:
            result.cache_key = compute_key(path, module.includes, arguments)
            result.includes = list(module.includes)
        return result

    def _build_binary(
        self,
        module: Module,
        binary: IRBinary,
        resolution: TableResolution,
        result: FileResult,
    ) -> None:
        options = self.options
        owner = f"{module.file}:{binary.output_name}"
        try:
            variants = binary_variants(binary)
            self._claim_outputs(binary, variants, owner)
        except (SemanticError, BuildError) as e:
            logger.error(f"{owner}: {e}")
            result.targets.append(
                TargetResult(
                    binary.output_name,
                    None,
                    binary.features,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            )
            return

        container = VariantContainer(binary.output_name)
        unavailable: dict[Platform, ToolchainError] = {}
        for platform in options.platforms:
            for features in variants:
                target = TargetResult(binary.output_name, platform, features)
                result.targets.append(target)
                self._check_feature_mask(binary, platform, features)
                try:
                    if platform in unavailable:
                        raise unavailable[platform]
                    data = self._build_target(
                        module, binary, platform, features, resolution, target
                    )
                except ToolchainError as e:
                    unavailable[platform] = e
                    self._fail(target, e)
                    continue
                except DialectSyntaxError:
                    raise
                except ShaderError as e:
                    self._fail(target, e)
                    continue
                container.add(ShaderVariant(platform, features, data))

                if options.compile and not binary.variants:
                    path = compiled_path(options, platform, binary.output_name)
                    atomic_write(path, data)
                    target.outputs.append(str(path))

        result.containers[binary.output_name] = container
        if options.compile and binary.variants and container.variants:
            path = container_path(options, binary.output_name)
            write_container(path, container)
            result.outputs.append(str(path))

    def _build_target(
        self,
        module: Module,
        binary: IRBinary,
        platform: Platform,
        features: Feature,
        resolution: TableResolution,
        target: TargetResult,
    ) -> bytes:
        """Generate and compile one target; returns the variant payload.

        Without compilation the payload is the generated source text.
        """
        options = self.options
        generated = generate(
            module,
            binary,
            platform,
            features,
            resolution=resolution,
            root_signatures=options.root_signatures,
        )
        source_path = generated_path(options, platform, binary.output_name, features)
        atomic_write(source_path, generated.source)
        target.outputs.append(str(source_path))

        if not options.compile:
            return generated.source.encode("utf-8")
        try:
            data = self.context.toolchain.compile(generated, binary.output_name)
        except CompilerError as e:
            raise e.with_location(module.file, None) from e
        logger.debug(f"Compiled {target.describe()} ({len(data)} bytes)")
        return data

    def _claim_outputs(
        self, binary: IRBinary, variants: list[Feature], owner: str
    ) -> None:
        options = self.options
        registry = self.context.outputs
        for platform in options.platforms:
            for features in variants:
                registry.claim(
                    generated_path(options, platform, binary.output_name, features), owner
                )
            if options.compile and not binary.variants:
                registry.claim(compiled_path(options, platform, binary.output_name), owner)
        if options.compile and binary.variants:
            registry.claim(container_path(options, binary.output_name), owner)

    def _check_feature_mask(
        self, binary: IRBinary, platform: Platform, features: Feature
    ) -> None:
        enabled = platform_features(platform, features)
        dropped = [n for n in feature_names(features) if Feature[n] not in enabled]
        if dropped:
            logger.warning(
                f"{binary.output_name}: {', '.join(dropped)} not available on "
                f"{platform.name}; FT_ macros left undefined"
            )

    def _fail(self, target: TargetResult, error: ShaderError) -> None:
        logger.error(f"{target.describe()}: {error}")
        target.error = str(error)
        target.error_type = type(error).__name__

    def _write_reflection(self, files: list[FileResult]) -> list[str]:
        """Write cross-reference files once per table, after all jobs finished."""
        written: dict[str, dict] = {}
        outputs = []
        for file_result in files:
            for name, table in sorted(file_result.tables.items()):
                data = crossref_data(table)
                if name in written:
                    if written[name] != data:
                        logger.warning(
                            f"Table '{name}' in {file_result.path} differs from an "
                            "earlier definition; keeping the first"
                        )
                    continue
                written[name] = data
                header, document = reflection_paths(self.options, name)
                atomic_write(header, crossref_header(data))
                atomic_write(document, crossref_json(data))
                outputs.extend([str(header), str(document)])
        if outputs:
            logger.info(f"Wrote {len(written)} resource cross-reference tables")
        return outputs
