"""Client that drives the GitHub command-line tool inside a session container."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from tgcodebot.docker_api import DockerClient, DockerError, ExecSession, run_command
from tgcodebot.github_models import (
    GithubAuthResult,
    GithubClientConfig,
    GithubCloneResult,
    extract_username_from_auth_status,
    is_clone_error,
    parse_oauth_response,
    timeout_message,
)

log = logging.getLogger(__name__)

_EXEC_ENV = (
    "PATH=/usr/local/bin:/usr/bin:/bin:/usr/local/sbin:/usr/sbin:/sbin",
    "HOME=/root",
)
_LOGIN_ENV = (*_EXEC_ENV, "TERM=xterm")

_LOGIN_COMMAND = ("gh", "auth", "login", "--git-protocol", "https")
_CREDENTIAL_TIMEOUT = 30.0
_OAUTH_COMPLETION_TIMEOUT = 60.0
_POLL_INTERVAL = 0.5

_EXEC_ERRORS = (DockerError, OSError, TimeoutError)


class OAuthProcess:
    """Handle on a running `gh auth login` process."""

    def __init__(self, docker: DockerClient, exec_id: str) -> None:
        self.docker = docker
        self.exec_id = exec_id

    async def wait_for_completion(self, timeout_secs: float) -> None:
        """Wait until the process stops; raise TimeoutError after timeout_secs."""

        async def _poll() -> None:
            while True:
                info = await self.docker.inspect_exec(self.exec_id)
                if info.get("Running") is False:
                    return
                await asyncio.sleep(_POLL_INTERVAL)

        try:
            await asyncio.wait_for(_poll(), timeout_secs)
        except TimeoutError:
            raise TimeoutError("OAuth process timed out") from None

    async def terminate(self) -> None:
        """Exec processes end on their own when login finishes or the container stops."""


class GithubClient:
    """Runs GitHub CLI commands inside a container."""

    def __init__(
        self,
        docker: DockerClient,
        container_id: str,
        config: GithubClientConfig | None = None,
    ) -> None:
        self.docker = docker
        self.container_id = container_id
        self.config = config if config is not None else GithubClientConfig()

    async def _exec(self, command: Sequence[str]) -> str:
        try:
            return await run_command(
                self.docker,
                self.container_id,
                command,
                working_dir=self.config.working_directory,
                env=_EXEC_ENV,
                timeout=self.config.exec_timeout_secs,
            )
        except TimeoutError:
            raise TimeoutError(
                timeout_message(self.config.exec_timeout_secs, command)
            ) from None

    async def exec_basic_command(self, command: Sequence[str]) -> str:
        """Run an arbitrary command and return its trimmed output."""
        return await self._exec(command)

    async def check_availability(self) -> str:
        """Return the output of `gh --version`."""
        return await self._exec(["gh", "--version"])

    async def check_auth_status(self) -> GithubAuthResult:
        """Report whether gh is logged in to github.com; never raises for exec failures."""
        try:
            output = await self._exec(["gh", "auth", "status"])
        except _EXEC_ERRORS as exc:
            log.warning("Failed to check auth status: %s", exc)
            return GithubAuthResult(
                authenticated=False, message=f"Auth status check failed: {exc}"
            )
        log.debug("Auth status output: %s", output)
        if "Logged in to github.com" in output:
            return GithubAuthResult(
                authenticated=True,
                username=extract_username_from_auth_status(output),
                message="Authenticated with GitHub",
            )
        return GithubAuthResult(authenticated=False, message="Not authenticated with GitHub")

    async def login(self) -> GithubAuthResult:
        """Start the device OAuth flow, returning as soon as URL and code are known."""
        status = await self.check_auth_status()
        if status.authenticated:
            log.info("Already authenticated with GitHub")
            return status
        try:
            result, _process = await self._start_oauth_flow(_LOGIN_COMMAND)
        except _EXEC_ERRORS as exc:
            log.error("GitHub login failed: %s", exc)
            return GithubAuthResult(authenticated=False, message=f"Login failed: {exc}")
        log.info("OAuth flow initiated successfully")
        return result

    async def _start_oauth_flow(
        self, command: Sequence[str]
    ) -> tuple[GithubAuthResult, OAuthProcess]:
        config: dict[str, Any] = {
            "Cmd": list(command),
            "AttachStdout": True,
            "AttachStderr": True,
            "Env": list(_LOGIN_ENV),
        }
        if self.config.working_directory is not None:
            config["WorkingDir"] = self.config.working_directory
        exec_id = await self.docker.create_exec(self.container_id, config)
        process = OAuthProcess(self.docker, exec_id)
        session = await self.docker.start_exec(exec_id)
        try:
            try:
                url, code = await asyncio.wait_for(
                    _read_credentials(session), _CREDENTIAL_TIMEOUT
                )
            except TimeoutError:
                raise TimeoutError(
                    "Timeout waiting for OAuth credentials in command output"
                ) from None
        finally:
            await session.close()

        if url is not None and code is not None:
            log.info("OAuth flow initiated - URL: %s, Code: %s", url, code)
            return (
                GithubAuthResult(
                    authenticated=False,
                    message=f"Please visit {url} and enter code: {code}",
                    oauth_url=url,
                    device_code=code,
                ),
                process,
            )
        return await self.check_auth_status(), process

    async def wait_for_oauth_completion(self, oauth_process: OAuthProcess) -> GithubAuthResult:
        """Wait for a login process to finish, then report the resulting status."""
        await oauth_process.wait_for_completion(_OAUTH_COMPLETION_TIMEOUT)
        return await self.check_auth_status()

    async def repo_clone(
        self, repository: str, target_dir: str | None = None
    ) -> GithubCloneResult:
        """Clone a repository with `gh repo clone`; failures are reported in the result."""
        log.info("Cloning repository '%s' via gh client...", repository)
        command = ["gh", "repo", "clone", repository]
        if target_dir is not None:
            command.append(target_dir)
            target_directory = target_dir
        else:
            target_directory = repository.split("/")[-1]

        try:
            output = await self._exec(command)
        except _EXEC_ERRORS as exc:
            log.error("Repository clone failed: %s", exc)
            return GithubCloneResult(
                success=False,
                repository=repository,
                target_directory=target_directory,
                message=f"Clone failed: {exc}",
            )

        log.debug("Clone command output: %s", output)
        if is_clone_error(output):
            log.error("Repository clone failed with error in output: %s", output)
            return GithubCloneResult(
                success=False,
                repository=repository,
                target_directory=target_directory,
                message=f"Clone failed: {output}",
            )
        return GithubCloneResult(
            success=True,
            repository=repository,
            target_directory=target_directory,
            message=f"Successfully cloned {repository}",
        )


async def _read_credentials(session: ExecSession) -> tuple[str | None, str | None]:
    buffer = ""
    async for text in session:
        buffer += text
        log.debug("OAuth output: %s", text)
        url, code = parse_oauth_response(buffer)
        if url is not None and code is not None:
            return url, code
    return None, None