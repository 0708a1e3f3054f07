"""Data types and output parsing for the GitHub command-line tool."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass

DEVICE_LOGIN_URL = "https://github.com/login/device"
OAUTH_LOGIN_URL = "https://github.com/login/oauth"

_CLONE_ERROR_MARKERS = (
    "exec failed",
    "executable file not found",
    "not found",
    "permission denied",
    "authentication required",
    "repository not found",
    "404",
)


@dataclass
class GithubAuthResult:
    """Outcome of a GitHub login or status check."""

    authenticated: bool
    username: str | None = None
    message: str = ""
    oauth_url: str | None = None
    device_code: str | None = None


@dataclass
class GithubCloneResult:
    """Outcome of cloning a repository."""

    success: bool
    repository: str
    target_directory: str
    message: str


@dataclass
class GithubClientConfig:
    working_directory: str | None = "/workspace"
    exec_timeout_secs: int = 60


def _lines(text: str) -> Iterator[str]:
    for line in text.split("\n"):
        yield line.removesuffix("\r")


def _url_from(line: str, prefix: str) -> str:
    part = line[line.index(prefix):]
    words = part.split()
    return words[0] if words else part


def parse_oauth_response(output: str) -> tuple[str | None, str | None]:
    """Find the OAuth URL and one-time device code in `gh auth login` output."""
    oauth_url: str | None = None
    device_code: str | None = None

    for line in _lines(output):
        if "First copy your one-time code:" in line or "one-time code:" in line:
            pieces = line.split("code:")
            if len(pieces) > 1:
                device_code = pieces[1].strip()

        if DEVICE_LOGIN_URL in line:
            oauth_url = _url_from(line, DEVICE_LOGIN_URL)
        elif OAUTH_LOGIN_URL in line:
            oauth_url = _url_from(line, OAUTH_LOGIN_URL)
        elif "Open this URL to continue" in line or "browser:" in line:
            pieces = line.split("browser:")
            if len(pieces) > 1:
                oauth_url = pieces[1].strip()

    return oauth_url, device_code


def extract_username_from_auth_status(output: str) -> str | None:
    """Return the user named in `gh auth status` output, if any."""
    for line in _lines(output):
        if "Logged in to github.com as" not in line:
            continue
        pieces = line.split(" as ")
        if len(pieces) < 2:
            continue
        words = pieces[1].split()
        username = (words[0] if words else "").strip("(").strip(")")
        if username:
            return username
    return None


def is_clone_error(output: str) -> bool:
    """Tell whether `gh repo clone` output reports a failure."""
    return any(marker in output for marker in _CLONE_ERROR_MARKERS)


def timeout_message(timeout_secs: int, command: Iterable[str]) -> str:
    """Error text for a command that ran longer than its time limit."""
    return f"Command timed out after {timeout_secs} seconds: {' '.join(command)}"