"""Telegram front end: receives commands and drives the coding session containers."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from tgcodebot import container_utils
from tgcodebot.bot_commands import (
    Command,
    extract_auth_url,
    format_github_error_message,
    format_github_login_message,
    format_github_status_message,
    generate_help_text,
    parse_command,
)
from tgcodebot.claude_client import ClaudeCodeClient
from tgcodebot.claude_models import ClaudeCodeConfig, InteractiveLoginState, LoginStage
from tgcodebot.docker_api import DockerClient, DockerError
from tgcodebot.github_client import GithubClient
from tgcodebot.github_models import GithubClientConfig

log = logging.getLogger(__name__)

API_ROOT = "https://api.telegram.org"
TOKEN_ENV = "TELOXIDE_TOKEN"
MARKDOWN_V2 = "MarkdownV2"

_POLL_TIMEOUT = 30
_RETRY_DELAY = 1.0
_SESSION_ERRORS = (LookupError, DockerError, OSError)
_EXEC_ERRORS = (DockerError, OSError, TimeoutError)

_NO_SESSION_HINT = "\n\nPlease start a coding session first using /start"


class TelegramApi:
    """Minimal Telegram Bot API client over an aiohttp session."""

    def __init__(self, token: str, session: aiohttp.ClientSession) -> None:
        self._base = f"{API_ROOT}/bot{token}"
        self._session = session

    async def _call(self, method: str, payload: dict[str, Any]) -> Any:
        async with self._session.post(f"{self._base}/{method}", json=payload) as response:
            data = await response.json(content_type=None)
        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description") if isinstance(data, dict) else data
            raise RuntimeError(f"Telegram API error in {method}: {description}")
        return data.get("result")

    async def send_message(
        self, chat_id: int, text: str, parse_mode: str | None = None
    ) -> dict[str, Any]:
        """Send a text message to a chat."""
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode is not None:
            payload["parse_mode"] = parse_mode
        return await self._call("sendMessage", payload)

    async def get_updates(
        self, offset: int | None = None, timeout: int = _POLL_TIMEOUT
    ) -> list[dict[str, Any]]:
        """Long-poll for new updates starting at offset."""
        payload: dict[str, Any] = {"timeout": timeout, "allowed_updates": ["message"]}
        if offset is not None:
            payload["offset"] = offset
        return await self._call("getUpdates", payload) or []


@dataclass
class AuthSession:
    """A Claude login in progress for one chat."""

    container_name: str
    state: InteractiveLoginState
    url: str | None = None


@dataclass
class BotState:
    """State shared by all command handlers."""

    docker: DockerClient
    auth_sessions: dict[int, AuthSession] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def _container_name(chat_id: int) -> str:
    return f"coding-session-{chat_id}"


async def pull_runtime_image(docker: DockerClient) -> None:
    """Pull the latest runtime image; failures are only logged."""
    log.info("Pulling latest runtime image: %s", container_utils.MAIN_CONTAINER_IMAGE)
    await container_utils.pull_image(docker)
    log.info("Runtime image pull completed")


async def _clear_session(api: TelegramApi, state: BotState, chat_id: int) -> None:
    async with state.lock:
        state.auth_sessions.pop(chat_id, None)
    try:
        await container_utils.clear_coding_session(state.docker, _container_name(chat_id))
    except _EXEC_ERRORS as exc:
        await api.send_message(chat_id, f"❌ Failed to clear session: {exc}")
        return
    await api.send_message(
        chat_id,
        "🧹 Coding session cleared successfully!\n\n"
        "The container has been stopped and removed.",
    )


async def _start_session(api: TelegramApi, state: BotState, chat_id: int) -> None:
    container_name = _container_name(chat_id)
    await api.send_message(
        chat_id,
        "Hello! I'm your Claude Code Chat Bot 🤖🐳\n\n"
        "🚀 Starting new coding session...\n\n"
        "⏳ Creating container with Claude Code...",
    )
    try:
        client = await container_utils.start_coding_session(
            state.docker, container_name, ClaudeCodeConfig()
        )
    except _EXEC_ERRORS as exc:
        await api.send_message(
            chat_id,
            f"❌ Failed to start coding session: {exc}\n\n"
            "This could be due to:\n"
            "• Container creation failure\n"
            "• Runtime image pull failure\n"
            "• Network connectivity issues",
        )
        return
    await api.send_message(
        chat_id,
        "✅ Coding session started successfully!\n\n"
        f"Container ID: {client.container_id[:12]}\n"
        f"Container Name: {container_name}\n\n"
        "🎯 Claude Code is pre-installed and ready to use!\n\n"
        "You can now run code and manage your development environment.",
    )


async def _claude_status(api: TelegramApi, state: BotState, chat_id: int) -> None:
    try:
        client = await ClaudeCodeClient.for_session(state.docker, _container_name(chat_id))
    except _SESSION_ERRORS as exc:
        await api.send_message(chat_id, f"❌ No active coding session found: {exc}")
        return
    try:
        version = await client.check_availability()
    except _EXEC_ERRORS as exc:
        await api.send_message(chat_id, f"❌ Claude Code check failed: {exc}")
        return
    await api.send_message(chat_id, f"✅ Claude Code is available!\n\nVersion: {version}")


async def _authenticate_claude(api: TelegramApi, state: BotState, chat_id: int) -> None:
    container_name = _container_name(chat_id)
    try:
        client = await ClaudeCodeClient.for_session(state.docker, container_name)
    except _SESSION_ERRORS as exc:
        await api.send_message(
            chat_id, f"❌ No active coding session found: {exc}{_NO_SESSION_HINT}"
        )
        return

    async with state.lock:
        existing = state.auth_sessions.get(chat_id)
    if existing is not None:
        if existing.state.stage is LoginStage.PROVIDE_URL:
            await api.send_message(
                chat_id,
                "🔐 **Authentication Already in Progress**\n\n"
                "You have an ongoing authentication session.\n\n"
                f"**Please visit this URL to continue:**\n{existing.state.value}\n\n"
                "After completing the OAuth flow, use `/authcode <your_code>` "
                "if a code is required.",
            )
            return
        if existing.state.stage is LoginStage.WAITING_FOR_CODE:
            await api.send_message(
                chat_id,
                "🔐 **Authentication Code Required**\n\n"
                "Please send your authentication code using:\n"
                "`/authcode <your_code>`",
            )
            return

    await api.send_message(
        chat_id,
        "🔐 Starting Claude account authentication process...\n\n⏳ Initiating OAuth flow...",
    )
    try:
        auth_info = await client.authenticate_claude_account()
    except _EXEC_ERRORS as exc:
        await api.send_message(
            chat_id,
            f"❌ Failed to initiate Claude account authentication: {exc}\n\n"
            "Please ensure:\n"
            "• Your coding session is active\n"
            "• Claude Code is properly installed\n"
            "• Network connectivity is available",
        )
        return

    url = extract_auth_url(auth_info)
    if url is None:
        await api.send_message(chat_id, auth_info)
        return
    async with state.lock:
        state.auth_sessions[chat_id] = AuthSession(
            container_name=container_name,
            state=InteractiveLoginState(LoginStage.PROVIDE_URL, url),
            url=url,
        )
    await api.send_message(
        chat_id,
        f"{auth_info}\n\n💡 **After completing authentication, "
        "use `/authcode <code>` if prompted for a code.**",
    )


async def _github_client(
    api: TelegramApi, state: BotState, chat_id: int
) -> GithubClient | None:
    try:
        client = await ClaudeCodeClient.for_session(state.docker, _container_name(chat_id))
    except _SESSION_ERRORS as exc:
        await api.send_message(
            chat_id, f"❌ No active coding session found: {exc}{_NO_SESSION_HINT}"
        )
        return None
    return GithubClient(state.docker, client.container_id, GithubClientConfig())


async def _github_auth(api: TelegramApi, state: BotState, chat_id: int) -> None:
    github = await _github_client(api, state, chat_id)
    if github is None:
        return
    await api.send_message(
        chat_id, "🔐 Starting GitHub authentication process...\n\n⏳ Initiating OAuth flow..."
    )
    try:
        result = await github.login()
    except _EXEC_ERRORS as exc:
        await api.send_message(chat_id, format_github_error_message(str(exc)))
        return
    await api.send_message(chat_id, format_github_login_message(result), MARKDOWN_V2)


async def _github_status(api: TelegramApi, state: BotState, chat_id: int) -> None:
    github = await _github_client(api, state, chat_id)
    if github is None:
        return
    try:
        result = await github.check_auth_status()
    except _EXEC_ERRORS as exc:
        await api.send_message(
            chat_id,
            f"❌ Failed to check GitHub authentication status: {exc}\n\n"
            "This could be due to:\n"
            "• GitHub CLI not being available\n"
            "• Network connectivity issues\n"
            "• Container problems",
        )
        return
    await api.send_message(chat_id, format_github_status_message(result), MARKDOWN_V2)


async def _help(api: TelegramApi, state: BotState, chat_id: int) -> None:
    await api.send_message(chat_id, generate_help_text())


_HANDLERS = {
    Command.HELP: _help,
    Command.START: _start_session,
    Command.CLEAR_SESSION: _clear_session,
    Command.CLAUDE_STATUS: _claude_status,
    Command.AUTHENTICATE_CLAUDE: _authenticate_claude,
    Command.GITHUB_AUTH: _github_auth,
    Command.GITHUB_STATUS: _github_status,
}


async def handle_command(
    api: TelegramApi, state: BotState, chat_id: int, command: Command
) -> None:
    """Carry out one bot command for a chat, replying through api."""
    await _HANDLERS[command](api, state, chat_id)


async def _dispatch(api: TelegramApi, state: BotState, chat_id: int, command: Command) -> None:
    try:
        await handle_command(api, state, chat_id, command)
    except Exception:
        log.exception("Handling /%s for chat %s failed", command.command, chat_id)


async def run(token: str) -> None:
    """Poll Telegram for commands until cancelled."""
    log.info("Starting Telegram bot...")
    docker = DockerClient()
    state = BotState(docker)
    tasks: set[asyncio.Task[None]] = set()
    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None)) as session:
        api = TelegramApi(token, session)
        pull_task = asyncio.create_task(pull_runtime_image(docker))
        offset: int | None = None
        try:
            while True:
                try:
                    updates = await api.get_updates(offset, _POLL_TIMEOUT)
                except (aiohttp.ClientError, RuntimeError, TimeoutError) as exc:
                    log.warning("Fetching updates failed: %s", exc)
                    await asyncio.sleep(_RETRY_DELAY)
                    continue
                for update in updates:
                    offset = update["update_id"] + 1
                    message = update.get("message") or {}
                    text = message.get("text")
                    chat_id = (message.get("chat") or {}).get("id")
                    command = parse_command(text) if text else None
                    if command is None or chat_id is None:
                        continue
                    task = asyncio.create_task(_dispatch(api, state, chat_id, command))
                    tasks.add(task)
                    task.add_done_callback(tasks.discard)
        finally:
            pull_task.cancel()
            for task in tasks:
                task.cancel()
            await docker.close()


def main(argv: Sequence[str] | None = None) -> None:
    """Command-line entry point."""
    parser = argparse.ArgumentParser(prog="tgcodebot", description="Claude Code chat bot")
    parser.add_argument(
        "--token",
        default=os.environ.get(TOKEN_ENV),
        help=f"bot token (default: ${TOKEN_ENV})",
    )
    args = parser.parse_args(argv)
    if not args.token:
        parser.error(f"a bot token is required: pass --token or set {TOKEN_ENV}")
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(run(args.token))
    except KeyboardInterrupt:
        pass