"""Tests for the build driver."""

from pathlib import Path

import pytest

from fslc.build import toolchain as toolchain_module
from fslc.build.driver import (
    BuildContext,
    BuildDriver,
    BuildOptions,
    compiled_path,
    container_path,
    generated_path,
    reflection_paths,
)
from fslc.build.packer import read_container
from fslc.compiler.models import NO_FEATURES, Feature, Platform

VARIANT_SOURCE = """\
#frag lit.frag
#variant FT_VRS
#variant FT_PRIM_ID
float4 PS_MAIN()
{
    INIT_MAIN;
    RETURN(float4(1.0, 1.0, 1.0, 1.0));
}
#end
"""

BROKEN_BINARY = """
#frag broken.frag
float4 PS_MAIN()
{
    RETURN(float4(0.0, 0.0, 0.0, 0.0));
}
#end
"""


@pytest.fixture
def options(tmp_path) -> BuildOptions:
    return BuildOptions(
        platforms=[Platform.VULKAN],
        output_dir=tmp_path / "out",
        binary_dir=tmp_path / "bin",
        reflection_dir=tmp_path / "refl",
        cache_dir=tmp_path / "cache",
    )


def _build(options, files, compilers, runner):
    context = BuildContext.create(options, compilers=compilers, runner=runner)
    return BuildDriver(context).build(files)


class TestOutputs:
    """Test the artifacts a build writes."""

    def test_generated_and_compiled(
        self, options, write_shader, basic_source, fake_compilers, fake_runner
    ):
        path = write_shader("basic.fsl", basic_source)

        report = _build(options, [path], fake_compilers, fake_runner)

        assert report.ok
        assert report.exit_code == 0
        assert report.files[0].status == "built"
        for name in ("basic.vert", "basic.frag"):
            generated = generated_path(options, Platform.VULKAN, name, NO_FEATURES)
            assert generated.read_text().startswith("#version 450")
            compiled = compiled_path(options, Platform.VULKAN, name)
            assert compiled.read_bytes() == f"compiled:{name}.spv".encode()
        assert fake_runner.count == 2

    def test_output_layout(self, options):
        assert generated_path(
            options, Platform.MACOS, "lit.frag", Feature.PRIM_ID | Feature.VRS
        ) == Path(options.output_dir) / "MACOS" / "lit.frag_PRIM_ID_VRS.metal"
        assert compiled_path(options, Platform.DIRECT3D12, "a.vert") == (
            Path(options.binary_dir) / "DIRECT3D12" / "a.vert.dxil"
        )
        assert container_path(options, "lit.frag").name == "lit.frag.fslv"

    def test_reflection(self, options, write_shader, basic_source, fake_compilers):
        options.compile = False
        path = write_shader("basic.fsl", basic_source)

        report = _build(options, [path], fake_compilers, None)

        header, document = reflection_paths(options, "MainSRT")
        assert "#define SRT_MainSRT_PerFrame_layers 3" in header.read_text()
        assert '"table": "MainSRT"' in document.read_text()
        assert report.reflection_outputs == [str(header), str(document)]

    def test_variant_container(self, options, write_shader, fake_compilers, fake_runner):
        """Test that a binary with #variant lines is packed into one container."""
        path = write_shader("lit.fsl", VARIANT_SOURCE)

        report = _build(options, [path], fake_compilers, fake_runner)

        assert report.ok
        container = read_container(container_path(options, "lit.frag"))
        assert container.lookup(Platform.VULKAN, Feature.VRS).data == b"compiled:lit.frag.spv"
        assert container.lookup(Platform.VULKAN, Feature.PRIM_ID)
        assert generated_path(options, Platform.VULKAN, "lit.frag", Feature.VRS).exists()
        assert not compiled_path(options, Platform.VULKAN, "lit.frag").exists()

    def test_without_compilation(
        self, options, write_shader, basic_source, fake_compilers, fake_runner
    ):
        """Test that payloads are the generated source when compiling is off."""
        options.compile = False
        path = write_shader("basic.fsl", basic_source)

        report = _build(options, [path], fake_compilers, fake_runner)

        assert report.ok
        assert fake_runner.count == 0
        assert not Path(options.binary_dir).exists()
        variant = report.files[0].containers["basic.frag"].lookup(Platform.VULKAN, NO_FEATURES)
        assert variant.data.startswith(b"#version 450")


class TestIncremental:
    """Test skipping unchanged inputs."""

    def test_second_build_is_cached(
        self, options, write_shader, basic_source, fake_compilers, fake_runner
    ):
        options.incremental = True
        path = write_shader("basic.fsl", basic_source)

        _build(options, [path], fake_compilers, fake_runner)
        report = _build(options, [path], fake_compilers, fake_runner)

        assert report.files[0].status == "cached"
        assert fake_runner.count == 2
        assert "1 up to date" in report.summary()

    def test_change_triggers_rebuild(
        self, options, write_shader, basic_source, fake_compilers, fake_runner
    ):
        options.incremental = True
        path = write_shader("basic.fsl", basic_source)
        _build(options, [path], fake_compilers, fake_runner)

        write_shader("basic.fsl", basic_source + "\n")
        report = _build(options, [path], fake_compilers, fake_runner)

        assert report.files[0].status == "built"
        assert fake_runner.count == 4

    def test_include_change_triggers_rebuild(
        self, options, write_shader, fake_compilers, fake_runner
    ):
        options.incremental = True
        write_shader("common.h", "#define SCALE 1.0\n")
        path = write_shader("lit.fsl", '#include "common.h"\n' + VARIANT_SOURCE)
        _build(options, [path], fake_compilers, fake_runner)

        write_shader("common.h", "#define SCALE 2.0\n")
        report = _build(options, [path], fake_compilers, fake_runner)

        assert report.files[0].status == "built"

    def test_missing_output_triggers_rebuild(
        self, options, write_shader, basic_source, fake_compilers, fake_runner
    ):
        options.incremental = True
        path = write_shader("basic.fsl", basic_source)
        _build(options, [path], fake_compilers, fake_runner)

        compiled_path(options, Platform.VULKAN, "basic.frag").unlink()
        report = _build(options, [path], fake_compilers, fake_runner)

        assert report.files[0].status == "built"


class TestFailureIsolation:
    """Test that failures stay at the narrowest scope."""

    def test_bad_binary_does_not_stop_others(
        self, options, write_shader, basic_source, fake_compilers, fake_runner
    ):
        path = write_shader("basic.fsl", basic_source + BROKEN_BINARY)

        report = _build(options, [path], fake_compilers, fake_runner)
        targets = {t.binary: t for t in report.files[0].targets}

        assert not report.ok
        assert report.exit_code == 1
        assert targets["basic.frag"].ok
        assert targets["broken.frag"].error_type == "SemanticError"
        assert "INIT_MAIN" in targets["broken.frag"].error
        assert compiled_path(options, Platform.VULKAN, "basic.frag").exists()

    def test_syntax_error_fails_only_its_file(
        self, options, write_shader, basic_source, fake_compilers, fake_runner
    ):
        bad = write_shader("bad.fsl", "#frag open.frag\n")
        good = write_shader("basic.fsl", basic_source)

        report = _build(options, [bad, good], fake_compilers, fake_runner)

        assert [f.status for f in report.files] == ["failed", "built"]
        assert "missing #end" in report.files[0].error
        assert report.failures[0].startswith(str(bad.resolve()))

    def test_unsupported_fails_only_its_platform(
        self, options, write_shader, compute_source, fake_compilers
    ):
        options.platforms = [Platform.DIRECT3D12, Platform.VULKAN]
        options.compile = False
        source = compute_source.replace(
            "AtomicAdd(counter[0], 1u);",
            "uint value = 0u;\n    AtomicLoad(counter[0], value);",
        )
        path = write_shader("update.fsl", source)

        report = _build(options, [path], fake_compilers, None)
        status = {t.platform: t.error_type for t in report.files[0].targets}

        assert status == {
            Platform.DIRECT3D12: "UnsupportedOperationError",
            Platform.VULKAN: None,
        }

    def test_compiler_error(
        self, options, write_shader, basic_source, fake_compilers, failing_runner
    ):
        path = write_shader("basic.fsl", basic_source)

        report = _build(options, [path], fake_compilers, failing_runner)

        assert {t.error_type for t in report.files[0].targets} == {"CompilerError"}
        assert "unknown type" in report.failures[0]

    def test_missing_toolchain(
        self, options, write_shader, basic_source, fake_runner, monkeypatch
    ):
        """Test that a missing compiler fails its platform and spares the others."""
        monkeypatch.delenv("FSLC_DXC", raising=False)
        monkeypatch.setattr(toolchain_module.shutil, "which", lambda name: None)
        options.platforms = [Platform.DIRECT3D12, Platform.VULKAN]
        path = write_shader("basic.fsl", basic_source)

        report = _build(
            options, [path], {"glslang": "glslangValidator"}, fake_runner
        )
        targets = report.files[0].targets

        assert {t.error_type for t in targets if t.platform == Platform.DIRECT3D12} == {
            "ToolchainError"
        }
        assert all(t.ok for t in targets if t.platform == Platform.VULKAN)

    def test_output_conflict(
        self, options, write_shader, basic_source, fake_compilers, fake_runner
    ):
        first = write_shader("a/basic.fsl", basic_source)
        second = write_shader("b/basic.fsl", basic_source)

        report = _build(options, [first, second], fake_compilers, fake_runner)
        conflicts = [
            t for f in report.files for t in f.targets if t.error_type == "BuildError"
        ]

        assert len(conflicts) == 2
        assert all(t.platform is None for t in conflicts)
        assert "is written by both" in conflicts[0].error
        assert report.files[0].targets[0].ok

    def test_duplicate_inputs_built_once(
        self, options, write_shader, basic_source, fake_compilers, fake_runner
    ):
        path = write_shader("basic.fsl", basic_source)

        report = _build(options, [path, str(path)], fake_compilers, fake_runner)

        assert len(report.files) == 1


def test_parallel_jobs(options, write_shader, basic_source, fake_compilers, fake_runner):
    """Test that a multi-worker build reports files in input order."""
    options.jobs = 4
    options.compile = False
    paths = [
        write_shader(f"s{i}.fsl", basic_source.replace("basic.", f"s{i}."))
        for i in range(6)
    ]

    report = _build(options, paths, fake_compilers, fake_runner)

    assert report.ok
    assert [Path(f.path).name for f in report.files] == [p.name for p in paths]


def test_interrupted_build_is_not_cached(
    options, write_shader, basic_source, fake_compilers, fake_runner, monkeypatch
):
    """Test that a build stopped before the reflection files leaves no cache hit."""
    options.incremental = True
    options.compile = False
    path = write_shader("basic.fsl", basic_source)
    _build(options, [path], fake_compilers, fake_runner)

    write_shader(
        "basic.fsl",
        basic_source.replace(
            "layers[4]);\n",
            "layers[4]);\n        DECL_TEXTURE(PerFrame, Tex2D(float4), extra);\n",
        ),
    )

    def interrupted(self, files):
        raise KeyboardInterrupt

    with monkeypatch.context() as patch:
        patch.setattr(BuildDriver, "_write_reflection", interrupted)
        with pytest.raises(KeyboardInterrupt):
            _build(options, [path], fake_compilers, fake_runner)

    report = _build(options, [path], fake_compilers, fake_runner)
    header, _ = reflection_paths(options, "MainSRT")

    assert report.files[0].status == "built"
    assert "SRT_MainSRT_PerFrame_extra 7" in header.read_text()


def test_compiler_error_names_its_file(
    options, write_shader, basic_source, fake_compilers, failing_runner
):
    path = write_shader("basic.fsl", basic_source)

    report = _build(options, [path], fake_compilers, failing_runner)
    target = report.files[0].targets[0]

    assert "failed with exit code 3 in basic.fsl\n" in target.error
    assert target.error.endswith("error: unknown type\n")
    assert all(f.startswith(f"{path.resolve()}: basic.") for f in report.failures)


def test_malformed_condition_fails_the_file(
    options, write_shader, basic_source, fake_compilers
):
    """Test that a condition that cannot be evaluated aborts its whole file."""
    options.compile = False
    options.incremental = True
    source = basic_source.replace(
        "    RETURN(color);",
        "#if defined(\n    color.a = 1.0;\n#endif\n    RETURN(color);",
    )
    bad = write_shader("bad.fsl", source)
    good = write_shader("other/basic.fsl", basic_source.replace("basic.", "other."))

    report = _build(options, [bad, good], fake_compilers, None)

    assert [f.status for f in report.files] == ["failed", "built"]
    assert "defined() expects an identifier" in report.files[0].error
    assert report.files[0].tables == {}
    assert BuildContext.create(options).cache.load(bad.resolve()) is None
