"""Tests for the hot-reload server and client."""

import socket
import threading

import pytest

from fslc.build.packer import unpack
from fslc.compiler.errors import ReloadError
from fslc.compiler.models import NO_FEATURES, Platform
from fslc.config import Config, ProjectSettings
from fslc.reload import ReloadClient, ReloadServer

pytestmark = pytest.mark.network


@pytest.fixture
def config(tmp_path, write_shader, basic_source) -> Config:
    shader = write_shader("shaders/basic.fsl", basic_source)
    return Config(
        platforms=[Platform.VULKAN],
        output_dir=tmp_path / "out",
        binary_dir=tmp_path / "bin",
        reflection_dir=tmp_path / "refl",
        cache_dir=tmp_path / "cache",
        compile=False,
        projects={"demo": ProjectSettings(files=[shader])},
    )


@pytest.fixture
def server(config):
    server = ReloadServer(config, ("127.0.0.1", 0))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()
    thread.join(timeout=5)


@pytest.fixture
def client(server) -> ReloadClient:
    host, port = server.server_address[:2]
    return ReloadClient(host, port, timeout=10)


def test_reload_whole_project(client):
    binaries = client.reload("demo", [])

    assert sorted(binaries) == ["basic.frag", "basic.vert"]
    variant = unpack(binaries["basic.frag"]).lookup(Platform.VULKAN, NO_FEATURES)
    assert variant.data.startswith(b"#version 450")


def test_reload_named_file(client, tmp_path):
    binaries = client.reload("demo", [str(tmp_path / "shaders" / "basic.fsl")])

    assert "basic.vert" in binaries


def test_unknown_project(client):
    with pytest.raises(ReloadError, match="unknown project 'other'"):
        client.reload("other", [])


def test_missing_file(client, tmp_path):
    with pytest.raises(ReloadError, match="input file not found"):
        client.reload("demo", [str(tmp_path / "missing.fsl")])


def test_build_failure_is_reported(client, write_shader, basic_source):
    path = write_shader("shaders/broken.fsl", basic_source.replace("INIT_MAIN;", "", 1))

    with pytest.raises(ReloadError, match="INIT_MAIN must be the first statement"):
        client.reload("demo", [str(path)])


def test_server_survives_bad_requests(client, server):
    """Test that malformed requests get an error and the connection stays usable."""
    host, port = server.server_address[:2]
    with socket.create_connection((host, port), timeout=10) as sock:
        reader = sock.makefile("rb")
        sock.sendall(b"not json\n")
        assert b"invalid JSON request" in reader.readline()
        sock.sendall(b'{"paths": []}\n')
        assert b"missing 'project'" in reader.readline()
        reader.close()

    assert client.reload("demo", [])


def test_server_busy(client, server):
    """Test that a request waiting too long for the compile lock is rejected."""
    server.queue_timeout = 0.05
    with server.compile_lock:
        with pytest.raises(ReloadError, match="server busy"):
            client.reload("demo", [])


def test_handle_request_directly(server):
    response = server.handle_request({"project": "demo", "paths": "basic.fsl"})

    assert response == {"ok": False, "error": "'paths' must be a list of strings"}


def test_client_without_server():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    with pytest.raises(ReloadError, match="reload server is not running"):
        ReloadClient("127.0.0.1", port, timeout=2).reload("demo", [])
