"""Bot command definitions and the text of replies built from results."""

from __future__ import annotations

import enum

from tgcodebot.github_models import GithubAuthResult

_MARKDOWN_V2_RESERVED = frozenset("_*[]()~`>#+-=|{}.!")


class Command(enum.Enum):
    """Commands understood by the bot, with their descriptions."""

    HELP = ("help", "Display this help message")
    START = ("start", "Start the bot and create a new coding session")
    CLEAR_SESSION = ("clearsession", "Clear the current session (stops and removes container)")
    CLAUDE_STATUS = ("claudestatus", "Check Claude Code availability")
    AUTHENTICATE_CLAUDE = (
        "authenticateclaude",
        "Authenticate Claude using your Claude account credentials (OAuth flow)",
    )
    GITHUB_AUTH = ("githubauth", "Authenticate with GitHub using OAuth flow")
    GITHUB_STATUS = ("githubstatus", "Check GitHub authentication status")

    def __init__(self, command: str, description: str) -> None:
        self.command = command
        self.description = description


_BY_NAME = {command.command: command for command in Command}


def escape_markdown_v2(text: str) -> str:
    """Escape the characters Telegram's MarkdownV2 reserves."""
    return "".join(f"\\{c}" if c in _MARKDOWN_V2_RESERVED else c for c in text)


def generate_help_text() -> str:
    """Command list in the "command - description" form BotFather accepts."""
    return "\n".join(f"{command.command} - {command.description}" for command in Command)


def parse_command(text: str) -> Command | None:
    """Return the command a message invokes, or None if it is not a known command."""
    words = text.split()
    if not words or not words[0].startswith("/") or len(words) > 1:
        return None
    name = words[0][1:].split("@", 1)[0]
    return _BY_NAME.get(name)


def extract_auth_url(auth_info: str) -> str | None:
    """Pull the sign-in URL out of Claude authentication instructions."""
    if "Visit this authentication URL" not in auth_info:
        return None
    start = auth_info.find("https://")
    if start < 0:
        return None
    return auth_info[start:].split("\n", 1)[0].strip()


def format_github_login_message(auth_result: GithubAuthResult) -> str:
    """MarkdownV2 reply for the result of a GitHub login attempt."""
    if auth_result.authenticated:
        if auth_result.username is not None:
            return (
                "✅ GitHub authentication successful\\!\n\n"
                f"👤 Logged in as: {escape_markdown_v2(auth_result.username)}\n\n"
                "🎯 You can now use GitHub features in your coding session\\."
            )
        return (
            "✅ GitHub authentication successful\\!\n\n"
            "🎯 You can now use GitHub features in your coding session\\."
        )
    if auth_result.oauth_url is not None and auth_result.device_code is not None:
        return (
            "🔗 *GitHub OAuth Authentication Required*\n\n"
            "*Please follow these steps:*\n\n"
            f"1️⃣ *Visit this URL:* {escape_markdown_v2(auth_result.oauth_url)}\n\n"
            f"2️⃣ *Enter this device code:*\n```{escape_markdown_v2(auth_result.device_code)}```\n\n"
            "3️⃣ *Sign in to your GitHub account* and authorize the application\n\n"
            "4️⃣ *Return here* \\- authentication will be completed automatically\n\n"
            "⏱️ This code will expire in a few minutes, so please complete the process promptly\\.\n\n"
            "💡 *Tip:* Use /githubstatus to check if authentication completed successfully\\."
        )
    return f"ℹ️ GitHub authentication status: {escape_markdown_v2(auth_result.message)}"


_STATUS_FEATURES = (
    "🎯 You can now use GitHub features like:\n"
    "• Repository cloning\n"
    "• Git operations\n"
    "• GitHub CLI commands"
)


def format_github_status_message(auth_result: GithubAuthResult) -> str:
    """MarkdownV2 reply for a GitHub authentication status check."""
    if auth_result.authenticated:
        if auth_result.username is not None:
            return (
                "✅ *GitHub Authentication Status: Authenticated*\n\n"
                f"👤 *Logged in as:* {escape_markdown_v2(auth_result.username)}\n\n"
                + _STATUS_FEATURES
            )
        return "✅ *GitHub Authentication Status: Authenticated*\n\n" + _STATUS_FEATURES
    return (
        "❌ *GitHub Authentication Status: Not Authenticated*\n\n"
        "🔐 Use `/githubauth` to start the authentication process\\.\n\n"
        "You'll receive an OAuth URL and device code to complete authentication "
        "in your browser\\."
    )


def format_github_error_message(error_msg: str) -> str:
    """Plain-text reply for a failed GitHub login, with timeouts explained separately."""
    if "timed out after" in error_msg:
        return (
            f"⏰ GitHub authentication timed out: {error_msg}\n\n"
            "This usually means:\n"
            "• The authentication process is taking longer than expected\n"
            "• There may be network connectivity issues\n"
            "• The GitHub CLI might be unresponsive\n\n"
            "Please try again in a few moments."
        )
    return (
        f"❌ Failed to initiate GitHub authentication: {error_msg}\n\n"
        "Please ensure:\n"
        "• Your coding session is active\n"
        "• GitHub CLI (gh) is properly installed\n"
        "• Network connectivity is available"
    )