import os
import stat

from services import server_utils
from services.server_utils import (
    Platform,
    binary_names,
    build_process_env,
    resolve_binary_path,
)


def test_library_path_prepends_binary_dir():
    env = build_process_env("/opt/bin/llama-server", base_env={"LD_LIBRARY_PATH": "/usr/lib"},
                            target=Platform.LINUX)
    assert env["LD_LIBRARY_PATH"] == "/opt/bin" + os.pathsep + "/usr/lib"


def test_library_path_per_platform():
    mac = build_process_env("/opt/bin/llama-server", base_env={}, target=Platform.MACOS)
    win = build_process_env("/opt/bin/llama-server", base_env={"PATH": "/usr/bin"}, target=Platform.WINDOWS)

    assert mac["DYLD_LIBRARY_PATH"] == "/opt/bin"
    assert win["PATH"].startswith("/opt/bin" + os.pathsep)


def test_base_env_is_not_mutated():
    base = {"HOME": "/home/user"}
    env = build_process_env("/opt/bin/server", base_env=base, target=Platform.LINUX)

    assert "LD_LIBRARY_PATH" not in base
    assert env["HOME"] == "/home/user"


def test_platform_specific_name_comes_first():
    names = binary_names("llama-server")
    assert names[0].startswith("llama-server-")
    assert names[-1].split(".")[0] == "llama-server"


def test_env_override_wins(tmp_path, monkeypatch):
    binary = tmp_path / "custom-llama"
    binary.write_text("#!/bin/sh\n")
    binary.chmod(binary.stat().st_mode | stat.S_IXUSR)
    monkeypatch.setenv("LLAMA_SERVER_PATH", str(binary))

    assert resolve_binary_path("llama-server", "LLAMA_SERVER_PATH") == binary


def test_dev_bin_dir_layout(tmp_path, monkeypatch):
    monkeypatch.setattr(server_utils.config, "DEV_BIN_DIR", tmp_path)
    monkeypatch.setattr(server_utils.config, "PACKAGED_BIN_DIR", None)
    binary = tmp_path / binary_names("sherpa-onnx-server")[0]
    binary.write_text("#!/bin/sh\n")
    binary.chmod(binary.stat().st_mode | stat.S_IXUSR)

    assert resolve_binary_path("sherpa-onnx-server") == binary


def test_unresolvable_binary(tmp_path, monkeypatch):
    monkeypatch.setattr(server_utils.config, "DEV_BIN_DIR", tmp_path)
    monkeypatch.setattr(server_utils.config, "PACKAGED_BIN_DIR", None)
    monkeypatch.setenv("PATH", str(tmp_path))

    assert resolve_binary_path("definitely-not-a-server") is None
