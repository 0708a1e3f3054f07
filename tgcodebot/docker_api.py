"""Asynchronous client for the parts of the Docker Engine API the bot needs."""

from __future__ import annotations

import asyncio
import json
import os
import struct
from collections import deque
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import suppress
from typing import Any
from urllib.parse import quote

import aiohttp

DEFAULT_SOCKET_PATH = "/var/run/docker.sock"

_BASE_URL = "http://docker"
_FRAME_HEADER = struct.Struct(">BxxxI")
_OUTPUT_STREAMS = frozenset({1, 2})


class DockerError(Exception):
    """An error reported by the Docker daemon or the connection to it."""

    def __init__(self, message: str, status: int | None = None) -> None:
        self.message = message
        self.status = status
        if status is None:
            super().__init__(message)
        else:
            super().__init__(f"Docker responded with status code {status}: {message}")


class CommandFailedError(DockerError):
    """A command run inside a container exited with a non-zero code."""

    def __init__(self, exit_code: int, output: str) -> None:
        self.exit_code = exit_code
        self.output = output
        super().__init__(f"Command failed with exit code {exit_code}: {output}")


def decode_frames(data: bytes) -> tuple[list[tuple[int, bytes]], bytes]:
    """Split a multiplexed exec stream into (stream id, payload) frames.

    Returns the complete frames and the bytes of any incomplete trailing frame.
    """
    frames: list[tuple[int, bytes]] = []
    view = memoryview(data)
    while len(view) >= _FRAME_HEADER.size:
        stream, size = _FRAME_HEADER.unpack(view[: _FRAME_HEADER.size])
        end = _FRAME_HEADER.size + size
        if len(view) < end:
            break
        frames.append((stream, bytes(view[_FRAME_HEADER.size : end])))
        view = view[end:]
    return frames, bytes(view)


class ExecSession:
    """An attached exec process: text output can be read and input written."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        tty: bool = False,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._tty = tty
        self._buffer = b""
        self._pending: deque[str] = deque()

    async def read(self) -> str | None:
        """Return the next chunk of stdout/stderr text, or None at end of stream."""
        while not self._pending:
            try:
                chunk = await self._reader.read(65536)
            except (ConnectionError, asyncio.IncompleteReadError):
                chunk = b""
            if not chunk:
                return None
            if self._tty:
                return chunk.decode("utf-8", errors="replace")
            frames, self._buffer = decode_frames(self._buffer + chunk)
            self._pending.extend(
                payload.decode("utf-8", errors="replace")
                for stream, payload in frames
                if stream in _OUTPUT_STREAMS
            )
        return self._pending.popleft()

    async def write(self, data: bytes | str) -> None:
        """Send data to the process's standard input."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._writer.write(data)
        await self._writer.drain()

    async def close(self) -> None:
        """Close the connection to the process."""
        self._writer.close()
        with suppress(OSError, ConnectionError):
            await self._writer.wait_closed()

    def __aiter__(self) -> ExecSession:
        return self

    async def __anext__(self) -> str:
        chunk = await self.read()
        if chunk is None:
            raise StopAsyncIteration
        return chunk

    async def __aenter__(self) -> ExecSession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


def _error_message(body: bytes) -> str:
    text = body.decode("utf-8", errors="replace").strip()
    try:
        data = json.loads(text)
    except ValueError:
        return text
    if isinstance(data, dict) and "message" in data:
        return str(data["message"])
    return text


def _quoted(identifier: str) -> str:
    return quote(identifier, safe="")


class DockerClient:
    """Talks to a Docker daemon listening on a Unix socket."""

    def __init__(self, socket_path: str | None = None) -> None:
        if socket_path is None:
            host = os.environ.get("DOCKER_HOST", "")
            if host.startswith("unix://"):
                socket_path = host.removeprefix("unix://")
            else:
                socket_path = DEFAULT_SOCKET_PATH
        self.socket_path = socket_path
        self._session: aiohttp.ClientSession | None = None

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.UnixConnector(path=self.socket_path),
                timeout=aiohttp.ClientTimeout(total=None),
            )
        return self._session

    async def close(self) -> None:
        """Release the HTTP connection pool."""
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> DockerClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        payload: Any = None,
    ) -> Any:
        try:
            async with self._client().request(
                method, _BASE_URL + path, params=params, json=payload
            ) as response:
                body = await response.read()
                if response.status >= 400:
                    raise DockerError(_error_message(body), response.status)
        except aiohttp.ClientError as exc:
            raise DockerError(str(exc)) from exc
        if not body.strip():
            return None
        try:
            return json.loads(body)
        except ValueError:
            return body.decode("utf-8", errors="replace")

    async def create_image(self, from_image: str) -> AsyncIterator[dict[str, Any]]:
        """Pull an image, yielding the daemon's progress records."""
        try:
            async with self._client().post(
                _BASE_URL + "/images/create", params={"fromImage": from_image}
            ) as response:
                if response.status >= 400:
                    raise DockerError(_error_message(await response.read()), response.status)
                async for line in response.content:
                    line = line.strip()
                    if not line:
                        continue
                    progress = json.loads(line)
                    if "error" in progress:
                        raise DockerError(str(progress["error"]))
                    yield progress
        except aiohttp.ClientError as exc:
            raise DockerError(str(exc)) from exc

    async def create_container(self, name: str, config: Mapping[str, Any]) -> str:
        """Create a container and return its id."""
        created = await self._request(
            "POST", "/containers/create", params={"name": name}, payload=dict(config)
        )
        return created["Id"]

    async def start_container(self, container_id: str) -> None:
        await self._request("POST", f"/containers/{_quoted(container_id)}/start")

    async def stop_container(self, container_id: str) -> None:
        await self._request("POST", f"/containers/{_quoted(container_id)}/stop")

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        await self._request(
            "DELETE",
            f"/containers/{_quoted(container_id)}",
            params={"force": "true" if force else "false"},
        )

    async def list_containers(self) -> list[dict[str, Any]]:
        """List running containers."""
        return await self._request("GET", "/containers/json") or []

    async def create_exec(self, container_id: str, config: Mapping[str, Any]) -> str:
        """Create an exec instance in a container and return its id."""
        created = await self._request(
            "POST", f"/containers/{_quoted(container_id)}/exec", payload=dict(config)
        )
        return created["Id"]

    async def start_exec(self, exec_id: str, tty: bool = False) -> ExecSession:
        """Start an exec instance attached to a new connection."""
        try:
            reader, writer = await asyncio.open_unix_connection(self.socket_path)
        except OSError as exc:
            raise DockerError(str(exc)) from exc
        body = json.dumps({"Detach": False, "Tty": tty}).encode()
        head = (
            f"POST /exec/{_quoted(exec_id)}/start HTTP/1.1\r\n"
            "Host: docker\r\n"
            "Content-Type: application/json\r\n"
            f"Content-Length: {len(body)}\r\n"
            "Connection: Upgrade\r\n"
            "Upgrade: tcp\r\n\r\n"
        ).encode()
        try:
            writer.write(head + body)
            await writer.drain()
            status, headers = await _read_response_head(reader)
            if status >= 400:
                length = headers.get("content-length")
                if length is not None:
                    error_body = await reader.readexactly(int(length))
                else:
                    error_body = await reader.read(65536)
                raise DockerError(_error_message(error_body), status)
        except (OSError, asyncio.IncompleteReadError) as exc:
            writer.close()
            raise DockerError(str(exc)) from exc
        except DockerError:
            writer.close()
            raise
        return ExecSession(reader, writer, tty)

    async def inspect_exec(self, exec_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/exec/{_quoted(exec_id)}/json")


async def _read_response_head(reader: asyncio.StreamReader) -> tuple[int, dict[str, str]]:
    status_line = await reader.readline()
    parts = status_line.decode("latin-1").split(maxsplit=2)
    if len(parts) < 2 or not parts[1].isdigit():
        raise DockerError(f"Malformed response from Docker: {status_line!r}")
    headers: dict[str, str] = {}
    while True:
        line = await reader.readline()
        if line in (b"\r\n", b"\n", b""):
            break
        name, _, value = line.decode("latin-1").partition(":")
        headers[name.strip().lower()] = value.strip()
    return int(parts[1]), headers


async def run_command(
    docker: DockerClient,
    container_id: str,
    command: Sequence[str],
    working_dir: str | None = None,
    env: Sequence[str] | None = None,
    check_exit: bool = True,
    timeout: float | None = None,
) -> str:
    """Run a command in a container and return its combined, trimmed output.

    Raises CommandFailedError for a non-zero exit code when check_exit is set,
    and TimeoutError when the whole run exceeds timeout seconds.
    """

    async def _run() -> str:
        config: dict[str, Any] = {
            "Cmd": list(command),
            "AttachStdout": True,
            "AttachStderr": True,
        }
        if working_dir is not None:
            config["WorkingDir"] = working_dir
        if env is not None:
            config["Env"] = list(env)
        exec_id = await docker.create_exec(container_id, config)
        async with await docker.start_exec(exec_id) as session:
            output = "".join([chunk async for chunk in session])
        output = output.strip()
        if check_exit:
            info = await docker.inspect_exec(exec_id)
            exit_code = info.get("ExitCode")
            if exit_code is not None and exit_code != 0:
                raise CommandFailedError(exit_code, output)
        return output

    if timeout is None:
        return await _run()
    return await asyncio.wait_for(_run(), timeout)