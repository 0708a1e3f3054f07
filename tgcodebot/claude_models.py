"""Data types and output parsing for the Claude Code command-line tool."""

from __future__ import annotations

import enum
import json
import re
from dataclasses import asdict, dataclass, fields
from typing import Any

_U32_MAX = 2**32 - 1
_U64_MAX = 2**64 - 1


def _as_str(name: str, value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError(f"field `{name}` must be a string")
    return value


def _as_bool(name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"field `{name}` must be a boolean")
    return value


def _as_float(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"field `{name}` must be a number")
    return float(value)


def _unsigned(limit: int):
    def check(name: str, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= limit:
            raise ValueError(f"field `{name}` must be an unsigned integer")
        return value

    return check


_FIELD_CHECKS = {
    "type": _as_str,
    "subtype": _as_str,
    "cost_usd": _as_float,
    "is_error": _as_bool,
    "duration_ms": _unsigned(_U64_MAX),
    "duration_api_ms": _unsigned(_U64_MAX),
    "num_turns": _unsigned(_U32_MAX),
    "result": _as_str,
    "session_id": _as_str,
}


@dataclass
class ClaudeCodeResult:
    """The JSON result printed by Claude Code with --output-format json."""

    type: str
    subtype: str
    cost_usd: float
    is_error: bool
    duration_ms: int
    duration_api_ms: int
    num_turns: int
    result: str
    session_id: str

    @classmethod
    def from_json(cls, text: str) -> ClaudeCodeResult:
        """Parse a JSON object; raise ValueError if it is not a valid result."""
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("expected a JSON object")
        values = {}
        for field in fields(cls):
            if field.name not in data:
                raise ValueError(f"missing field `{field.name}`")
            values[field.name] = _FIELD_CHECKS[field.name](field.name, data[field.name])
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ClaudeCodeConfig:
    model: str = "claude-sonnet-4"
    max_tokens: int | None = None
    temperature: float | None = None
    working_directory: str | None = "/workspace"


class LoginStage(enum.Enum):
    DARK_MODE = "dark_mode"
    SELECT_LOGIN_METHOD = "select_login_method"
    PROVIDE_URL = "provide_url"
    WAITING_FOR_CODE = "waiting_for_code"
    LOGIN_SUCCESSFUL = "login_successful"
    SECURITY_NOTES = "security_notes"
    TRUST_FILES = "trust_files"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class InteractiveLoginState:
    """A stage of the interactive login; value holds the URL or error text."""

    stage: LoginStage
    value: str | None = None


@dataclass
class InteractiveLoginSession:
    state: InteractiveLoginState = InteractiveLoginState(LoginStage.DARK_MODE)
    url: str | None = None
    awaiting_user_code: bool = False


def parse_result(output: str) -> ClaudeCodeResult:
    """Parse Claude Code output, falling back to a plain-text result."""
    try:
        return ClaudeCodeResult.from_json(output)
    except ValueError:
        is_error = "error" in output.lower()
        return ClaudeCodeResult(
            type="result",
            subtype="error" if is_error else "success",
            cost_usd=0.0,
            is_error=is_error,
            duration_ms=0,
            duration_api_ms=0,
            num_turns=1,
            result=output,
            session_id="unknown",
        )


def _sign_in_url_state(output: str) -> InteractiveLoginState:
    for line in output.split("\n"):
        trimmed = line.strip()
        if trimmed.startswith("https://"):
            return InteractiveLoginState(LoginStage.PROVIDE_URL, trimmed)
    match = re.search(r"https://\S*", output)
    if match:
        return InteractiveLoginState(LoginStage.PROVIDE_URL, match.group())
    return InteractiveLoginState(LoginStage.ERROR, "URL not found in sign-in output")


_SIMPLE_MARKERS = (
    ("paste code here if prompted", LoginStage.WAITING_FOR_CODE),
    ("login successful", LoginStage.LOGIN_SUCCESSFUL),
    ("security notes", LoginStage.SECURITY_NOTES),
    ("do you trust the files in this folder", LoginStage.TRUST_FILES),
)


def parse_cli_output_for_state(output: str) -> InteractiveLoginState:
    """Work out which login prompt a piece of CLI output shows."""
    lowered = output.lower()
    if "dark mode" in lowered:
        return InteractiveLoginState(LoginStage.DARK_MODE)
    if "select login method" in lowered:
        return InteractiveLoginState(LoginStage.SELECT_LOGIN_METHOD)
    if "use the url below to sign in" in lowered:
        return _sign_in_url_state(output)
    for marker, stage in _SIMPLE_MARKERS:
        if marker in lowered:
            return InteractiveLoginState(stage)
    return InteractiveLoginState(LoginStage.DARK_MODE)