import asyncio
import os
import time

import pytest

from core.errors import ProcessStartupError, RequestFailureError, ServerNotReadyError
from models.server_models import ServerState
from services.llama_server import LlamaServerManager
from services.server_utils import find_available_port


@pytest.fixture
def model_file(tmp_path):
    path = tmp_path / "tiny.gguf"
    path.write_bytes(b"gguf")
    return path


@pytest.fixture
def spawn_log(tmp_path, monkeypatch):
    path = tmp_path / "spawns.log"
    monkeypatch.setenv("FAKE_BACKEND_SPAWN_LOG", str(path))
    return path


def spawned_pids(spawn_log):
    if not spawn_log.exists():
        return []
    return spawn_log.read_text().split()


async def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.05)
    return predicate()


def test_concurrent_starts_spawn_one_process(fake_backend, fast_settings, model_file, spawn_log):
    async def scenario():
        server = LlamaServerManager(settings=fast_settings, binary_path=fake_backend)
        try:
            await asyncio.gather(server.start(model_file), server.start(model_file))
            status = server.status()
            # 同一模型再次启动是空操作
            await server.start(model_file)
            return status
        finally:
            await server.stop()

    status = asyncio.run(scenario())

    assert status.state == ServerState.READY
    assert status.ready
    assert status.model_name == "tiny.gguf"
    assert len(spawned_pids(spawn_log)) == 1


def test_early_exit_reports_stderr(fake_backend, fast_settings, model_file, monkeypatch):
    monkeypatch.setenv("FAKE_BACKEND_MODE", "crash")

    async def scenario():
        server = LlamaServerManager(settings=fast_settings, binary_path=fake_backend)
        with pytest.raises(ProcessStartupError) as exc_info:
            await server.start(model_file)
        return server, exc_info.value

    server, error = asyncio.run(scenario())

    assert "fatal: model load failed" in error.message
    assert error.exit_code == 3
    assert server.state == ServerState.STOPPED
    assert server.process is None
    assert "fatal: model load failed" in server.last_error


def test_missing_binary(fast_settings, model_file, tmp_path):
    async def scenario():
        server = LlamaServerManager(settings=fast_settings, binary_path=tmp_path / "nope")
        await server.start(model_file)

    with pytest.raises(ProcessStartupError):
        asyncio.run(scenario())


def test_missing_model_path(fake_backend, fast_settings, tmp_path):
    async def scenario():
        server = LlamaServerManager(settings=fast_settings, binary_path=fake_backend)
        await server.start(tmp_path / "absent.gguf")

    with pytest.raises(ProcessStartupError):
        asyncio.run(scenario())


def test_health_failures_mark_degraded_without_killing(fake_backend, fast_settings, model_file, tmp_path,
                                                       monkeypatch):
    health_file = tmp_path / "health"
    monkeypatch.setenv("FAKE_BACKEND_HEALTH_FILE", str(health_file))

    async def scenario():
        server = LlamaServerManager(settings=fast_settings, binary_path=fake_backend)
        try:
            await server.start(model_file)
            pid = server.process.pid

            health_file.write_text("fail")
            assert await wait_until(lambda: server.state == ServerState.DEGRADED)
            degraded = (server.ready, server.process is not None, server.process.returncode)
            with pytest.raises(ServerNotReadyError):
                server.ensure_ready()

            health_file.write_text("ok")
            assert await wait_until(lambda: server.state == ServerState.READY)
            return pid, degraded, server.process.pid, server.ready
        finally:
            await server.stop()

    pid, degraded, pid_after, ready_after = asyncio.run(scenario())

    assert degraded == (False, True, None)
    assert pid_after == pid
    assert ready_after


def test_stop_during_startup_reports_startup_error(fake_backend, fast_settings, model_file, tmp_path,
                                                  monkeypatch):
    health_file = tmp_path / "health"
    health_file.write_text("fail")
    monkeypatch.setenv("FAKE_BACKEND_HEALTH_FILE", str(health_file))

    async def scenario():
        server = LlamaServerManager(settings=fast_settings, binary_path=fake_backend)
        starting = asyncio.ensure_future(server.start(model_file))
        assert await wait_until(lambda: server.process is not None)
        pid = server.process.pid
        await asyncio.sleep(0.3)
        await server.stop()
        with pytest.raises(ProcessStartupError) as exc_info:
            await starting
        return server, pid, exc_info.value

    server, pid, error = asyncio.run(scenario())

    assert "stop()" in error.message
    assert server.state == ServerState.STOPPED
    assert server.process is None
    with pytest.raises(OSError):
        os.kill(pid, 0)


def test_unexpected_exit_is_reported(fake_backend, fast_settings, model_file):
    async def scenario():
        server = LlamaServerManager(settings=fast_settings, binary_path=fake_backend)
        await server.start(model_file)
        server.process.kill()
        assert await wait_until(lambda: server.state == ServerState.STOPPED)
        status = server.status()
        await server.stop()
        return status

    status = asyncio.run(scenario())

    assert not status.running
    assert not status.ready
    assert "退出" in status.last_error


def test_inference_round_trip(fake_backend, fast_settings, model_file):
    async def scenario():
        server = LlamaServerManager(settings=fast_settings, binary_path=fake_backend)
        try:
            await server.start(model_file)
            text = await server.inference([{"role": "user", "content": "hello"}])
            with pytest.raises(RequestFailureError) as exc_info:
                await server.post_json("/v1/unknown", {}, timeout=5)
            return text, exc_info.value
        finally:
            await server.stop()

    text, error = asyncio.run(scenario())

    assert text == "echo: hello <|im_end|>"
    assert error.status_code == 404


@pytest.mark.parametrize("response", [
    {"choices": ["not a dict"]},
    {"choices": [{"message": "plain text"}]},
    {"choices": [{"message": {"content": ["tokens"]}}]},
    {"choices": "oops"},
])
def test_malformed_chat_completion_is_request_failure(fast_settings, response):
    server = LlamaServerManager(settings=fast_settings, binary_path="/nonexistent")

    async def fake_post_json(path, payload, timeout):
        return response

    server.post_json = fake_post_json

    with pytest.raises(RequestFailureError) as exc_info:
        asyncio.run(server.inference([{"role": "user", "content": "hi"}]))

    assert exc_info.value.status_code == 200
    assert exc_info.value.body


def test_missing_choices_yield_empty_text(fast_settings):
    server = LlamaServerManager(settings=fast_settings, binary_path="/nonexistent")

    async def fake_post_json(path, payload, timeout):
        return {"choices": []}

    server.post_json = fake_post_json

    assert asyncio.run(server.inference([{"role": "user", "content": "hi"}])) == ""


def test_stop_without_process_is_safe(fast_settings):
    async def scenario():
        server = LlamaServerManager(settings=fast_settings, binary_path="/nonexistent")
        await server.stop()
        await server.stop()
        return server.status()

    status = asyncio.run(scenario())

    assert status.state == ServerState.STOPPED
    assert status.pid is None
    assert status.to_dict()["state"] == "stopped"


def test_stop_terminates_process(fake_backend, fast_settings, model_file):
    async def scenario():
        server = LlamaServerManager(settings=fast_settings, binary_path=fake_backend)
        await server.start(model_file)
        pid = server.process.pid
        await server.stop()
        return pid

    pid = asyncio.run(scenario())

    with pytest.raises(OSError):
        os.kill(pid, 0)


def test_port_scan_skips_ports_in_use():
    import socket

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        busy = sock.getsockname()[1]
        port = find_available_port((busy, busy + 5))

    assert port != busy
    assert busy < port <= busy + 5


def test_port_scan_exhausted():
    import socket

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        busy = sock.getsockname()[1]
        with pytest.raises(ProcessStartupError):
            find_available_port((busy, busy))
