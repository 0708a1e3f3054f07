"""Client that drives the Claude Code command-line tool inside a session container."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Iterable, Sequence

from tgcodebot.claude_models import (
    ClaudeCodeConfig,
    ClaudeCodeResult,
    InteractiveLoginSession,
    InteractiveLoginState,
    LoginStage,
    parse_cli_output_for_state,
    parse_result,
)
from tgcodebot.docker_api import DockerClient, DockerError, ExecSession, run_command

log = logging.getLogger(__name__)

_PATH = (
    "PATH=/root/.nvm/versions/node/v22.16.0/bin:/root/.nvm/versions/node/v20.19.2/bin:"
    "/root/.nvm/versions/node/v18.20.8/bin:/usr/local/sbin:/usr/local/bin:/usr/sbin:"
    "/usr/bin:/sbin:/bin"
)
_NODE_PATH = "NODE_PATH=/root/.nvm/versions/node/v22.16.0/lib/node_modules"
_EXEC_ENV = (_PATH, _NODE_PATH)
_INTERACTIVE_ENV = (_PATH, _NODE_PATH, "TERM=xterm")

_STARTUP_DELAY = 0.5
_STEP_DELAY = 0.2
_LOGIN_TIMEOUT = 60.0
_POLL_INTERVAL = 0.5

_KEYSTROKES = {
    LoginStage.DARK_MODE: b"\n",
    LoginStage.SELECT_LOGIN_METHOD: b"1\n",
    LoginStage.LOGIN_SUCCESSFUL: b"\n",
    LoginStage.SECURITY_NOTES: b"\n",
}

ALREADY_AUTHENTICATED_MESSAGE = "✅ Claude Code is already authenticated and ready to use!"

AUTH_COMPLETED_MESSAGE = (
    "✅ **Claude Authentication Completed!**\n\n"
    "Your Claude account has been successfully authenticated.\n\n"
    "You can now use Claude Code with your account privileges."
)

FALLBACK_AUTH_INSTRUCTIONS = """🔐 **Claude Account Authentication**

To authenticate with your Claude account, please follow these steps:

**1. Start Claude CLI interactively:**
   Run `claude` in your terminal

**2. Use the login command:**
   Type `/login` and press Enter

**3. Select account authentication:**
   Choose option 1 for "Account authentication"

**4. Follow the OAuth flow:**
   - Visit the provided authentication URL
   - Sign in with your Claude Pro/Team account
   - Complete the authorization process

**5. Return to Claude Code:**
   Once authenticated, Claude Code will have access to your account

✨ **Benefits:**
- Full integration with your Claude subscription
- Access to all your Claude Pro/Team features
- No separate API key management required

💡 **Note:** If you encounter issues, ensure you have a valid Claude account and subscription."""


def _url_message(url: str) -> str:
    return (
        "🔐 **Claude Account Authentication**\n\n"
        "To complete authentication with your Claude account:\n\n"
        f"**1. Visit this authentication URL:**\n{url}\n\n"
        "**2. Sign in with your Claude account**\n\n"
        "**3. Complete the OAuth flow in your browser**\n\n"
        "**4. Once complete, the authentication will be automatically detected**\n\n"
        "✨ This will enable full access to your Claude subscription features!\n\n"
        "💡 The authentication process will continue running in the background."
    )


def _format_number(value: float) -> str:
    number = float(value)
    return str(int(number)) if number.is_integer() else repr(number)


def _shell_quote_body(text: str) -> str:
    return text.replace("'", "'\"'\"'")


class ClaudeAuthProcess:
    """Handle on a running interactive login process."""

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
            raise TimeoutError("Claude authentication process timed out") from None

    async def terminate(self) -> None:
        """Exec processes end on their own when login finishes or the container stops."""


class ClaudeCodeClient:
    """Runs Claude Code commands inside a container."""

    def __init__(
        self,
        docker: DockerClient,
        container_id: str,
        config: ClaudeCodeConfig | None = None,
    ) -> None:
        self.docker = docker
        self.container_id = container_id
        self.config = config if config is not None else ClaudeCodeConfig()
        self.auth_process: ClaudeAuthProcess | None = None

    @classmethod
    async def for_session(cls, docker: DockerClient, container_name: str) -> ClaudeCodeClient:
        """Find the running container with this name; raise LookupError if absent."""
        containers = await docker.list_containers()
        for container in containers:
            names = container.get("Names") or []
            if any(name.lstrip("/") == container_name for name in names):
                container_id = container.get("Id")
                if not container_id:
                    raise LookupError("Container ID not found")
                return cls(docker, container_id, ClaudeCodeConfig())
        raise LookupError("Container not found")

    async def _exec(self, command: Sequence[str]) -> str:
        return await run_command(
            self.docker,
            self.container_id,
            command,
            working_dir=self.config.working_directory,
            env=_EXEC_ENV,
        )

    async def exec_basic_command(self, command: Sequence[str]) -> str:
        """Run an arbitrary command and return its trimmed output."""
        return await self._exec(command)

    async def execute_prompt(self, prompt: str) -> ClaudeCodeResult:
        """Run a single prompt in print mode."""
        command = [
            "claude", "-p", prompt,
            "--output-format", "json",
            "--model", self.config.model,
        ]
        if self.config.max_tokens is not None:
            command += ["--max-tokens", str(self.config.max_tokens)]
        if self.config.temperature is not None:
            command += ["--temperature", _format_number(self.config.temperature)]
        output = await self._exec(command)
        try:
            return ClaudeCodeResult.from_json(output)
        except ValueError:
            return ClaudeCodeResult(
                type="result",
                subtype="success",
                cost_usd=0.0,
                is_error=False,
                duration_ms=0,
                duration_api_ms=0,
                num_turns=1,
                result=output,
                session_id="unknown",
            )

    async def execute_with_stdin(self, prompt: str, stdin_content: str) -> ClaudeCodeResult:
        """Run a prompt with content fed on standard input through a temporary file."""
        temp_file = f"/tmp/claude_input_{uuid.uuid4()}"
        await self._exec(
            ["sh", "-c", f"echo '{_shell_quote_body(stdin_content)}' > {temp_file}"]
        )
        max_tokens = (
            f"--max-tokens {self.config.max_tokens}"
            if self.config.max_tokens is not None
            else ""
        )
        output = await self._exec(
            [
                "sh",
                "-c",
                f"claude -p '{_shell_quote_body(prompt)}' --output-format json "
                f"--model {self.config.model} {max_tokens} < {temp_file}",
            ]
        )
        try:
            await self._exec(["rm", temp_file])
        except (DockerError, OSError) as exc:
            log.debug("Failed to remove %s: %s", temp_file, exc)
        return parse_result(output)

    async def start_chat_session(self, initial_message: str | None = None) -> ClaudeCodeResult:
        command = [
            "claude", "chat",
            "--output-format", "json",
            "--model", self.config.model,
        ]
        if initial_message is not None:
            command += ["--message", initial_message]
        return parse_result(await self._exec(command))

    async def send_chat_message(self, session_id: str, message: str) -> ClaudeCodeResult:
        command = [
            "claude", "chat",
            "--session-id", session_id,
            "--message", message,
            "--output-format", "json",
        ]
        return parse_result(await self._exec(command))

    async def run_coding_task(self, task: str, files: Iterable[str]) -> ClaudeCodeResult:
        command = [
            "claude", "code",
            "--task", task,
            "--output-format", "json",
            "--model", self.config.model,
        ]
        for file in files:
            command += ["--file", file]
        return parse_result(await self._exec(command))

    async def get_session_status(self) -> ClaudeCodeResult:
        return parse_result(await self._exec(["claude", "status", "--output-format", "json"]))

    async def create_commit(self, message: str | None = None) -> ClaudeCodeResult:
        command = ["claude", "commit", "--output-format", "json"]
        if message is not None:
            command += ["-m", message]
        return parse_result(await self._exec(command))

    async def check_auth_status(self) -> bool:
        """Return True when a trivial prompt runs without an error result."""
        try:
            output = await self._exec(["claude", "-p", "  ", "--output-format", "json"])
        except (DockerError, OSError) as exc:
            log.debug("Claude auth check failed: %s", exc)
            return False
        return not parse_result(output).is_error

    async def get_auth_info(self) -> str:
        if await self.check_auth_status():
            return "✅ Claude Code is authenticated and ready to use"
        return "❌ Claude Code is not authenticated. Please set up your Anthropic API key."

    async def check_availability(self) -> str:
        """Return the output of `claude --version`."""
        return await self._exec(["claude", "--version"])

    async def authenticate_claude_account(self) -> str:
        """Start account login, returning instructions or a status message."""
        if await self.check_auth_status():
            return ALREADY_AUTHENTICATED_MESSAGE
        return await self._interactive_claude_login()

    async def _interactive_claude_login(self) -> str:
        config = {
            "Cmd": ["claude"],
            "AttachStdin": True,
            "AttachStdout": True,
            "AttachStderr": True,
            "Tty": True,
            "Env": list(_INTERACTIVE_ENV),
        }
        if self.config.working_directory is not None:
            config["WorkingDir"] = self.config.working_directory
        exec_id = await self.docker.create_exec(self.container_id, config)
        self.auth_process = ClaudeAuthProcess(self.docker, exec_id)
        session = await self.docker.start_exec(exec_id, tty=True)
        try:
            await asyncio.sleep(_STARTUP_DELAY)
            try:
                result = await asyncio.wait_for(self._drive_login(session), _LOGIN_TIMEOUT)
            except TimeoutError:
                log.warning("Timeout in interactive login after 60 seconds")
                return FALLBACK_AUTH_INSTRUCTIONS
            except (DockerError, OSError) as exc:
                log.error("Error in interactive login: %s", exc)
                return FALLBACK_AUTH_INSTRUCTIONS
            if not result:
                log.warning("Interactive login completed without clear result")
                return FALLBACK_AUTH_INSTRUCTIONS
            return result
        finally:
            await session.close()

    async def _drive_login(self, session: ExecSession) -> str:
        login = InteractiveLoginSession()
        received: list[str] = []
        async for text in session:
            received.append(text)
            log.debug("Claude CLI output: %s", text)
            state = parse_cli_output_for_state(text)
            stage = state.stage
            if stage in _KEYSTROKES:
                await session.write(_KEYSTROKES[stage])
                login.state = state
            elif stage is LoginStage.PROVIDE_URL:
                log.info("Authentication URL detected: %s", state.value)
                login.url = state.value
                login.state = state
                return _url_message(state.value or "")
            elif stage is LoginStage.WAITING_FOR_CODE:
                login.awaiting_user_code = True
                login.state = state
            elif stage is LoginStage.TRUST_FILES:
                await session.write(b"\n")
                login.state = InteractiveLoginState(LoginStage.COMPLETED)
                return AUTH_COMPLETED_MESSAGE
            elif stage is LoginStage.COMPLETED:
                break
            else:
                log.warning("Error in interactive login: %s", state.value)
                login.state = state
            await asyncio.sleep(_STEP_DELAY)
        return "".join(received)