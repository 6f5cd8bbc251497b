"""Security validation for sandbox file access and read-only commands.

This module provides the checks that keep remote file operations inside the
sandbox source root and restrict ``exec_read`` to read-only listing and
search commands.
"""

import posixpath
import shlex

# Read-only listing/search commands that may run inside a sandbox
ALLOWED_COMMANDS: list[str] = [
    "find",
    "ls",
    "cat",
    "head",
    "tail",
    "wc",
    "grep",
    "stat",
]

# Operators that chain, substitute or redirect; matched as raw substrings.
BLOCKED_OPERATORS: list[str] = [
    "|",
    "&&",
    "||",
    ";",
    "$(",
    "`",
    ">",
    "<",
    ">>",
]

# Arguments that turn a listing command into a writing or executing one.
BLOCKED_ARGUMENTS: list[str] = [
    "-exec",
    "-execdir",
    "-ok",
    "-okdir",
    "-delete",
    "-fprint",
    "-fprint0",
    "-fprintf",
    "-fls",
]

# System directories a command may not name, alone or as a path prefix.
BLOCKED_PATHS: list[str] = [
    "/etc",
    "/var",
    "/usr",
    "/bin",
    "/root",
    "/proc",
]


def _tokenize(command: str) -> list[str]:
    """Split a command the way a POSIX shell would, or on whitespace if unbalanced."""
    try:
        return shlex.split(command, posix=True)
    except ValueError:
        return command.split()


def _has_parent_component(token: str) -> bool:
    return ".." in token.replace("\\", "/").split("/")


def _blocked_path_in(tokens: list[str]) -> str | None:
    for prefix in BLOCKED_PATHS:
        if any(t == prefix or t.startswith(prefix + "/") for t in tokens):
            return prefix
    return None


def validate_command(command: str) -> tuple[bool, str]:
    """Check that a command is a single read-only listing or search command.

    Checks run in a fixed order and the first failure wins: null bytes,
    empty input, shell operators, ``..`` components, system paths, writing or
    executing arguments, and finally the command allowlist.

    Returns:
        ``(True, "")`` when the command may run, otherwise ``(False, reason)``.

    Examples:
        >>> validate_command("find /app/src -type f")
        (True, "")
        >>> validate_command("cat /etc/passwd")
        (False, "Blocked path detected: /etc")
        >>> validate_command("find . -delete")
        (False, "Blocked argument detected: -delete")
    """
    if "\x00" in (command or ""):
        return False, "Command contains null byte"

    tokens = _tokenize(command or "")
    if not tokens:
        return False, "Command cannot be empty"

    operator = next((op for op in BLOCKED_OPERATORS if op in command), None)
    if operator is not None:
        return False, f"Blocked operator detected: {operator}"

    if any(_has_parent_component(t) for t in tokens):
        return False, "Path traversal blocked: contains '..'"

    blocked_path = _blocked_path_in(tokens)
    if blocked_path is not None:
        return False, f"Blocked path detected: {blocked_path}"

    argument = next((t for t in tokens if t in BLOCKED_ARGUMENTS), None)
    if argument is not None:
        return False, f"Blocked argument detected: {argument}"

    if tokens[0] not in ALLOWED_COMMANDS:
        return False, f"Command not in allowlist: {tokens[0]}"
    return True, ""


def normalize_relative_path(relative_path: str) -> str:
    """Normalize a sandbox-relative path to ``a/b/c`` form.

    Raises:
        ValueError: If the path is empty, absolute, or escapes the root.
    """
    is_valid, error_msg, _ = validate_path("/", relative_path)
    if not is_valid:
        raise ValueError(error_msg)
    normalized = posixpath.normpath(relative_path.replace("\\", "/"))
    return "" if normalized == "." else normalized


def validate_path(sandbox_root: str, relative_path: str) -> tuple[bool, str, str]:
    """Validate a file path to prevent directory traversal attacks.

    Ensures that the normalized path remains within the sandbox root. The
    check is purely lexical because the root lives inside the container, not
    on the host.

    Args:
        sandbox_root: The absolute container path of the source root
            (e.g., "/app/src").
        relative_path: The path relative to the sandbox root.

    Returns:
        A tuple of (is_valid, error_message, absolute_path).
        If valid, error_message is empty and absolute_path is the full
        container path. If invalid, absolute_path is empty.

    Examples:
        >>> validate_path("/app/src", "pages/index.tsx")
        (True, "", "/app/src/pages/index.tsx")
        >>> validate_path("/app/src", "../etc/passwd")
        (False, "Path traversal blocked: contains '..'", "")
        >>> validate_path("/app/src", "/etc/passwd")
        (False, "Absolute paths not allowed", "")
    """
    if not relative_path or not relative_path.strip():
        return False, "Path cannot be empty", ""

    if "\x00" in relative_path:
        return False, "Path contains null byte", ""

    candidate = relative_path.replace("\\", "/")
    if candidate.startswith("/"):
        return False, "Absolute paths not allowed", ""

    # Reject parent traversal components while allowing safe names like
    # "file..bak" (which include ".." but not as a path component).
    components = [part for part in candidate.split("/") if part not in ("", ".")]
    if ".." in components:
        return False, "Path traversal blocked: contains '..'", ""

    root = posixpath.normpath(sandbox_root)
    resolved = posixpath.normpath(posixpath.join(root, *components)) if components else root

    if resolved != root and not resolved.startswith(root.rstrip("/") + "/"):
        return False, f"Path traversal blocked: {relative_path}", ""

    return True, "", resolved


def sanitize_output(output: str, max_length: int = 200000) -> str:
    """Sanitize command output for safe transmission.

    Truncates excessively long output.

    Args:
        output: The raw command output string.
        max_length: Maximum allowed length before truncation.

    Returns:
        The sanitized output string.
    """
    if not output:
        return ""

    if len(output) > max_length:
        truncated_chars = len(output) - max_length
        output = (
            output[:max_length]
            + f"\n... [truncated, {truncated_chars} chars omitted]"
        )

    return output
