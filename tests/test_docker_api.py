import asyncio
import contextlib
import json
import os
import re
import shutil
import struct
import tempfile

import pytest
from aiohttp import web

from tgcodebot.docker_api import (
    CommandFailedError,
    DockerClient,
    DockerError,
    ExecSession,
    decode_frames,
    run_command,
)


def _frame(stream, payload):
    return struct.pack(">BxxxI", stream, len(payload)) + payload


class _FakeWriter:
    def __init__(self):
        self.data = bytearray()
        self.closed = False

    def write(self, data):
        self.data.extend(data)

    async def drain(self):
        pass

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


def _reader_with(data):
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


class _FakeDocker:
    def __init__(self, payload, exit_code=0, delay=0.0):
        self.payload = payload
        self.exit_code = exit_code
        self.delay = delay
        self.calls = []
        self.inspected = []

    async def create_exec(self, container_id, config):
        self.calls.append((container_id, config))
        return "exec-1"

    async def start_exec(self, exec_id, tty=False):
        await asyncio.sleep(self.delay)
        return ExecSession(_reader_with(self.payload), _FakeWriter())

    async def inspect_exec(self, exec_id):
        self.inspected.append(exec_id)
        return {"ExitCode": self.exit_code, "Running": False}


@pytest.fixture
def socket_path():
    directory = tempfile.mkdtemp(prefix="dk", dir="/tmp" if os.path.isdir("/tmp") else None)
    yield os.path.join(directory, "d.sock")
    shutil.rmtree(directory, ignore_errors=True)


@contextlib.asynccontextmanager
async def _serve_app(app, path):
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.UnixSite(runner, path)
    await site.start()
    try:
        yield
    finally:
        await runner.cleanup()


@contextlib.asynccontextmanager
async def _serve_raw(handler, path):
    server = await asyncio.start_unix_server(handler, path=path)
    try:
        yield
    finally:
        server.close()
        await server.wait_closed()


def test_decode_frames_single_frame():
    data = b"\x01\x00\x00\x00\x00\x00\x00\x05hello"
    assert decode_frames(data) == ([(1, b"hello")], b"")


def test_decode_frames_multiple_round_trip():
    frames = [(1, b"out"), (2, b"err"), (1, b"")]
    data = b"".join(_frame(stream, payload) for stream, payload in frames)
    assert decode_frames(data) == (frames, b"")


def test_decode_frames_keeps_incomplete_tail():
    complete = _frame(1, b"abc")
    partial_header = b"\x02\x00\x00"
    partial_payload = _frame(2, b"abcdef")[:-2]
    assert decode_frames(complete + partial_header) == ([(1, b"abc")], partial_header)
    assert decode_frames(complete + partial_payload) == ([(1, b"abc")], partial_payload)


@pytest.mark.asyncio
async def test_exec_session_reads_multiplexed_output_split_across_chunks():
    data = _frame(1, b"hello ") + _frame(0, b"ignored") + _frame(2, b"world")
    reader = asyncio.StreamReader()
    reader.feed_data(data[:5])
    reader.feed_data(data[5:])
    reader.feed_eof()
    session = ExecSession(reader, _FakeWriter())
    chunks = [chunk async for chunk in session]
    assert "".join(chunks) == "hello world"
    assert await session.read() is None


@pytest.mark.asyncio
async def test_exec_session_tty_mode_returns_raw_text():
    session = ExecSession(_reader_with(b"Dark mode?\r\n"), _FakeWriter(), tty=True)
    assert await session.read() == "Dark mode?\r\n"
    assert await session.read() is None


@pytest.mark.asyncio
async def test_exec_session_write_and_close():
    writer = _FakeWriter()
    async with ExecSession(_reader_with(b""), writer, tty=True) as session:
        await session.write("1\n")
        await session.write(b"\n")
    assert bytes(writer.data) == b"1\n\n"
    assert writer.closed


@pytest.mark.asyncio
async def test_run_command_returns_trimmed_output_and_passes_config():
    docker = _FakeDocker(_frame(1, b"  Hello World\n"))
    output = await run_command(
        docker, "container", ["echo", "Hello World"], working_dir="/tmp", env=["HOME=/root"]
    )
    assert output == "Hello World"
    container_id, config = docker.calls[0]
    assert container_id == "container"
    assert config["Cmd"] == ["echo", "Hello World"]
    assert config["WorkingDir"] == "/tmp"
    assert config["Env"] == ["HOME=/root"]
    assert config["AttachStdout"] is True and config["AttachStderr"] is True
    assert docker.inspected == ["exec-1"]


@pytest.mark.asyncio
async def test_run_command_raises_on_non_zero_exit():
    docker = _FakeDocker(_frame(2, b"boom\n"), exit_code=3)
    with pytest.raises(CommandFailedError) as info:
        await run_command(docker, "container", ["false"])
    assert info.value.exit_code == 3
    assert str(info.value) == "Command failed with exit code 3: boom"


@pytest.mark.asyncio
async def test_run_command_without_exit_check_ignores_exit_code():
    docker = _FakeDocker(_frame(1, b"ready"), exit_code=1)
    assert await run_command(docker, "container", ["echo", "ready"], check_exit=False) == "ready"
    assert docker.inspected == []


@pytest.mark.asyncio
async def test_run_command_times_out():
    docker = _FakeDocker(b"", delay=1.0)
    with pytest.raises(asyncio.TimeoutError):
        await run_command(docker, "container", ["sleep"], timeout=0.05)


def test_socket_path_from_docker_host(monkeypatch):
    monkeypatch.setenv("DOCKER_HOST", "unix:///run/user/docker.sock")
    assert DockerClient().socket_path == "/run/user/docker.sock"
    assert DockerClient("/x.sock").socket_path == "/x.sock"


@pytest.mark.asyncio
async def test_start_exec_upgrades_connection(socket_path):
    requests = []

    async def handler(reader, writer):
        head = await reader.readuntil(b"\r\n\r\n")
        length = int(re.search(rb"Content-Length: (\d+)", head).group(1))
        requests.append((head, json.loads(await reader.readexactly(length))))
        writer.write(
            b"HTTP/1.1 101 UPGRADED\r\n"
            b"Content-Type: application/vnd.docker.multiplexed-stream\r\n"
            b"Connection: Upgrade\r\nUpgrade: tcp\r\n\r\n"
        )
        writer.write(_frame(1, b"hi ") + _frame(2, b"there"))
        await writer.drain()
        writer.close()

    async with _serve_raw(handler, socket_path):
        client = DockerClient(socket_path)
        async with await client.start_exec("abc") as session:
            output = "".join([chunk async for chunk in session])
    assert output == "hi there"
    head, body = requests[0]
    assert head.startswith(b"POST /exec/abc/start HTTP/1.1")
    assert body == {"Detach": False, "Tty": False}


@pytest.mark.asyncio
async def test_start_exec_error_raises(socket_path):
    async def handler(reader, writer):
        await reader.readuntil(b"\r\n\r\n")
        body = json.dumps({"message": "No such exec instance: abc"}).encode()
        writer.write(
            b"HTTP/1.1 404 Not Found\r\nContent-Type: application/json\r\n"
            + f"Content-Length: {len(body)}\r\n\r\n".encode()
            + body
        )
        await writer.drain()
        writer.close()

    async with _serve_raw(handler, socket_path):
        client = DockerClient(socket_path)
        with pytest.raises(DockerError) as info:
            await client.start_exec("abc")
    assert info.value.status == 404
    assert "No such exec instance: abc" in str(info.value)


@pytest.mark.asyncio
async def test_rest_calls(socket_path):
    seen = {}

    async def create_container(request):
        seen["name"] = request.query.get("name")
        seen["config"] = await request.json()
        return web.json_response({"Id": "c0ffee", "Warnings": []}, status=201)

    async def start_container(request):
        seen["started"] = request.match_info["cid"]
        return web.Response(status=204)

    async def remove_container(request):
        seen["force"] = request.query.get("force")
        return web.json_response({"message": "No such container: gone"}, status=404)

    async def list_containers(request):
        return web.json_response([{"Id": "c0ffee", "Names": ["/session"]}])

    async def create_exec(request):
        seen["exec_config"] = await request.json()
        return web.json_response({"Id": "e1"}, status=201)

    async def inspect_exec(request):
        return web.json_response({"ExitCode": 0, "Running": False})

    app = web.Application()
    app.router.add_post("/containers/create", create_container)
    app.router.add_post("/containers/{cid}/start", start_container)
    app.router.add_delete("/containers/{cid}", remove_container)
    app.router.add_get("/containers/json", list_containers)
    app.router.add_post("/containers/{cid}/exec", create_exec)
    app.router.add_get("/exec/{eid}/json", inspect_exec)

    async with _serve_app(app, socket_path):
        async with DockerClient(socket_path) as client:
            container_id = await client.create_container("session", {"Image": "img"})
            await client.start_container(container_id)
            containers = await client.list_containers()
            exec_id = await client.create_exec(container_id, {"Cmd": ["echo"]})
            info = await client.inspect_exec(exec_id)
            with pytest.raises(DockerError) as error:
                await client.remove_container("gone", force=True)

    assert container_id == "c0ffee"
    assert seen["name"] == "session"
    assert seen["config"] == {"Image": "img"}
    assert seen["started"] == "c0ffee"
    assert containers == [{"Id": "c0ffee", "Names": ["/session"]}]
    assert exec_id == "e1"
    assert seen["exec_config"] == {"Cmd": ["echo"]}
    assert info["ExitCode"] == 0
    assert seen["force"] == "true"
    assert "No such container" in str(error.value)
    assert error.value.status == 404


@pytest.mark.asyncio
async def test_create_image_streams_progress_and_reports_errors(socket_path):
    async def create_image(request):
        if request.query["fromImage"] == "bad":
            text = json.dumps({"status": "Pulling"}) + "\n" + json.dumps({"error": "denied"}) + "\n"
        else:
            text = json.dumps({"status": "Pulling"}) + "\n\n" + json.dumps({"status": "Done"}) + "\n"
        return web.Response(text=text, content_type="application/json")

    app = web.Application()
    app.router.add_post("/images/create", create_image)

    async with _serve_app(app, socket_path):
        async with DockerClient(socket_path) as client:
            progress = [item async for item in client.create_image("good")]
            received = []
            with pytest.raises(DockerError) as error:
                async for item in client.create_image("bad"):
                    received.append(item)

    assert progress == [{"status": "Pulling"}, {"status": "Done"}]
    assert received == [{"status": "Pulling"}]
    assert str(error.value) == "denied"