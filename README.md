# tgcodebot

A Telegram bot that gives every chat its own coding session: a Docker
container built from a multi-language runtime image with Claude Code and the
GitHub CLI pre-installed. Chat commands start and clear the session, check
that Claude Code is available, and start the sign-in flows for a Claude
account and for GitHub from inside the container.

## Requirements

- Python 3.11 or later
- A running Docker daemon reachable through a local Unix socket
- A Telegram bot token

## Running the bot

Give the bot its token through the environment and start it:

```
export TELOXIDE_TOKEN=token
tgcodebot
```

The token can also be passed as `tgcodebot --token token`. The log level is
taken from the `LOG_LEVEL` environment variable (default `INFO`).

The bot long-polls the Telegram Bot API for messages. On start-up it pulls the
runtime image in the background; a failed pull is only logged. Each command is
handled in its own task, so a slow command in one chat does not hold up others.

### Docker and the runtime image

- The Docker socket is taken from `DOCKER_HOST` when it is a `unix://`
  address, and is `/var/run/docker.sock` otherwise.
- The session image is `telegram-claude-code-runtime:main` unless the
  `TGCODEBOT_RUNTIME_IMAGE` environment variable names another one. The image
  is expected to provide `claude` and `gh`.

## Chat commands

| Command               | What it does                                                        |
|-----------------------|---------------------------------------------------------------------|
| `/help`               | Lists the commands in the `command - description` form BotFather accepts |
| `/start`              | Replaces the chat's container with a fresh coding session           |
| `/clearsession`       | Stops and removes the chat's container and forgets a pending Claude sign-in |
| `/claudestatus`       | Reports the output of `claude --version` in the session             |
| `/authenticateclaude` | Starts the Claude account sign-in and sends the sign-in URL         |
| `/githubauth`         | Starts the GitHub device flow and sends the URL and device code     |
| `/githubstatus`       | Reports whether the session is signed in to GitHub, and as whom     |

Each chat's container is named `coding-session-<chat id>`. A message is taken
as a command only when it is a single word such as `/start` or
`/start@botname`; anything else is ignored.

## What the bot does not do

- It does not relay ordinary chat messages to Claude Code; only the commands
  above are answered.
- Some replies mention `/authcode <code>`, but there is no such command: a
  code asked for during Claude sign-in cannot be sent through the bot.
- Sign-in state for a chat is held in memory only and is lost when the bot
  stops.

## Using the pieces directly

The package can also be used as a library; everything that touches Docker is
`async`.

- `tgcodebot.docker_api.DockerClient` talks to the Docker Engine API over its
  Unix socket (images, containers and exec instances). `run_command` runs a
  command in a container and returns its trimmed output, raising
  `CommandFailedError` for a non-zero exit code and `TimeoutError` when a
  timeout is given and exceeded. Errors from the daemon are `DockerError`.
- `tgcodebot.container_utils` pulls the runtime image (`pull_image`), starts
  and waits for session containers (`start_coding_session`,
  `create_test_container`, `wait_for_container_ready`) and removes them
  (`clear_coding_session`).
- `tgcodebot.claude_client.ClaudeCodeClient` drives Claude Code inside a
  container: prompts, chat, coding tasks, commits, status and account sign-in.
  `ClaudeCodeClient.for_session` finds a running session by container name and
  raises `LookupError` when there is none. It is configured with
  `tgcodebot.claude_models.ClaudeCodeConfig` (model `claude-sonnet-4`, working
  directory `/workspace`).
- `tgcodebot.github_client.GithubClient` runs `gh` inside a container to check
  sign-in status, start the device flow and clone repositories. It is
  configured with `tgcodebot.github_models.GithubClientConfig`, which defaults
  to `/workspace` and a 60 second command timeout.
- `tgcodebot.bot.handle_command` carries out one command for a chat through a
  `TelegramApi` and a `BotState`.

The text helpers need no Docker at all:

```python
from tgcodebot.bot_commands import escape_markdown_v2, generate_help_text
from tgcodebot.claude_models import parse_cli_output_for_state

print(escape_markdown_v2("Device code: ABC-123!"))
# Device code: ABC\-123\!

print(generate_help_text())
# help - Display this help message
# start - Start the bot and create a new coding session
# ...

state = parse_cli_output_for_state("Use the url below to sign in: https://example.com")
print(state.stage, state.value)
# LoginStage.PROVIDE_URL https://example.com
```

`tgcodebot.github_models` parses `gh` output in the same way
(`parse_oauth_response`, `extract_username_from_auth_status`,
`is_clone_error`).

## Tests

The tests use pytest and pytest-asyncio, available through the `test` extra:

```
pip install -e ".[test]"
pytest
```