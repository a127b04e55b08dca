from __future__ import annotations

import re


class CommandGuardError(Exception):
    pass


# Commands that are refused outright, approval or not.
DENY_PATTERNS = [
    r"\brm\s+(-[a-zA-Z]*[rf][a-zA-Z]*\s+)+(/|~|\*|/\*)(\s|$)",
    r"(curl|wget)\s+.+\|\s*(sudo\s+)?(sh|bash|zsh)\b",
    r"\bdd\b.*\bof=/dev/",
    r"\bmkfs(\.\w+)?\b",
    r":\s*\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;",
    r">\s*/dev/(sd[a-z]|nvme\d|disk\d)",
    r"\b(shutdown|reboot|halt)\b",
    r"\bformat\s+[a-zA-Z]:",
]


def validate_command(cmd: str) -> None:
    if not cmd.strip():
        raise CommandGuardError("Command must not be empty")
    for pattern in DENY_PATTERNS:
        if re.search(pattern, cmd):
            raise CommandGuardError(f"Command blocked by denylist pattern: {pattern}")
