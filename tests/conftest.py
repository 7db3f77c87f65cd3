"""Fixtures and configuration for pytest."""

import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

BASIC_SOURCE = """\
STRUCT(VSIn)
{
    DATA(float3, position, POSITION);
    DATA(float2, uv, TEXCOORD0);
};

STRUCT(VSOut)
{
    DATA(float4, position, SV_Position);
    DATA(float2, uv, TEXCOORD0);
};

STRUCT(FrameData)
{
    DATA(float4x4, viewProj, None);
};

BEGIN_SRT(MainSRT)
    BEGIN_SRT_SET(Persistent)
        DECL_SAMPLER(Persistent, SamplerState, linearSampler);
        DECL_TEXTURE(Persistent, Tex2D(float4), albedo);
    END_SRT_SET(Persistent)
    BEGIN_SRT_SET(PerFrame)
        DECL_CBUFFER(PerFrame, CBUFFER(FrameData), frame);
        DECL_TEXTURE(PerFrame, Tex2D(float4), layers[4]);
    END_SRT_SET(PerFrame)
END_SRT(MainSRT)

#vert basic.vert
ROOT_SIGNATURE(DefaultRootSignature)
USE_SRT(MainSRT)
VSOut VS_MAIN(VSIn In, SV_VertexID(uint) vid)
{
    INIT_MAIN;
    VSOut Out;
    Out.position = mul(frame.viewProj, float4(In.position, 1.0));
    Out.uv = In.uv;
    RETURN(Out);
}
#end

#frag basic.frag
USE_SRT(MainSRT)
float4 PS_MAIN(VSOut In)
{
    INIT_MAIN;
    float4 color = SampleTex2D(albedo, linearSampler, In.uv);
    RETURN(color);
}
#end
"""

COMPUTE_SOURCE = """\
STRUCT(Particle)
{
    DATA(float4, position, None);
};

BEGIN_SRT(ComputeSRT)
    BEGIN_SRT_SET(PerFrame)
        DECL_RWBUFFER(PerFrame, RWBuffer(Particle), particles);
        DECL_RWBUFFER(PerFrame, RWBuffer(atomic_uint), counter);
    END_SRT_SET(PerFrame)
END_SRT(ComputeSRT)

GROUPSHARED(uint, tileCount);

#comp update.comp
ROOT_SIGNATURE(ComputeRootSignature)
USE_SRT(ComputeSRT)
NUM_THREADS(64, 1, 1)
void CS_MAIN(SV_DispatchThreadID(uint3) tid)
{
    INIT_MAIN;
    particles[tid.x].position += float4(0.0, 1.0, 0.0, 0.0);
    AtomicAdd(counter[0], 1u);
    RETURN();
}
#end
"""

FAKE_COMPILERS = {"dxc": "dxc", "glslang": "glslangValidator", "xcrun": "xcrun"}


class FakeRunner:
    """Stands in for the native compilers.

    Records every command and, on success, writes the file named after
    ``-o``/``-Fo`` so the toolchain finds its output.
    """

    def __init__(self, returncode: int = 0, stderr: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        self.commands: list[list[str]] = []

    @property
    def count(self) -> int:
        return len(self.commands)

    def __call__(self, command: list[str]) -> subprocess.CompletedProcess:
        self.commands.append(list(command))
        if self.returncode == 0:
            flag = "-Fo" if "-Fo" in command else "-o"
            output = Path(command[command.index(flag) + 1])
            output.write_bytes(f"compiled:{output.name}".encode())
        return subprocess.CompletedProcess(
            command, self.returncode, stdout="", stderr=self.stderr
        )


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "network: mark test as opening local sockets")


@pytest.fixture
def basic_source() -> str:
    """Vertex and fragment binaries sharing one resource table."""
    return BASIC_SOURCE


@pytest.fixture
def compute_source() -> str:
    """A compute binary with read-write buffers and an atomic."""
    return COMPUTE_SOURCE


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def fake_compilers() -> dict[str, str]:
    return dict(FAKE_COMPILERS)


@pytest.fixture
def write_shader(tmp_path: Path) -> Callable[[str, str], Path]:
    """Factory writing a shader source into the test directory."""

    def _write(name: str, text: str) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def failing_runner() -> FakeRunner:
    """Runner whose every compiler invocation fails with a diagnostic."""
    return FakeRunner(returncode=3, stderr="shader.src:4:1: error: unknown type\n")
