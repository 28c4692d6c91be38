"""
Path and command guard for sandbox operations.

Pure, synchronous validation used before anything reaches a sandbox.
The command denylist is a second line of defence on top of the
sandbox's own isolation, not a replacement for it.
"""

import posixpath
import re
from typing import Iterable, List, Optional, Sequence

from pydantic import BaseModel

from sandbox_engine.config import GuardSettings, config
from sandbox_engine.exceptions import SecurityViolation
from sandbox_engine.logger import logger


_SANDBOX_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class GuardVerdict(BaseModel):
    """Outcome of a guard check."""

    allowed: bool
    reason: str = ""
    rule: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


class CommandRule(BaseModel):
    """Denylist entry matched against the joined command text."""

    name: str
    pattern: str
    description: str
    enabled: bool = True


DEFAULT_COMMAND_RULES = [
    CommandRule(
        name="recursive_force_delete",
        pattern=(
            r"\brm(?=[^;&|\n]*\s(?:-[a-zA-Z]*[rR][a-zA-Z]*|--recursive)\b)"
            r"(?=[^;&|\n]*\s(?:-[a-zA-Z]*f[a-zA-Z]*|--force)\b)"
        ),
        description="Recursive forced deletion",
    ),
    CommandRule(
        name="privilege_escalation",
        pattern=r"(?:^|[\s;&|(])(?:sudo|su|doas)(?:\s|$)",
        description="Privilege escalation attempts",
    ),
    CommandRule(
        name="format_disk",
        pattern=r"\b(?:mkfs(?:\.\w+)?|fdisk)\b|\bdd\s+[^;&|]*\bof=/dev/",
        description="Disk formatting operations",
    ),
    CommandRule(
        name="system_shutdown",
        pattern=r"(?:^|[\s;&|(])(?:shutdown|reboot|halt|poweroff)(?:\s|$)",
        description="System shutdown commands",
    ),
    CommandRule(
        name="fork_bomb",
        pattern=r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}",
        description="Fork bomb",
    ),
    CommandRule(
        name="root_permission_change",
        pattern=r"\bch(?:mod|own)\s+(?:-\w+\s+)*\S+\s+/(?:\s|$)",
        description="Ownership or mode change on the filesystem root",
    ),
    CommandRule(
        name="system_config_path",
        pattern=r"(?:^|[\s=<>'\"(:])/(?:etc|proc|sys|boot|root)(?:/|\s|$|['\"])",
        description="Operations against system configuration paths",
    ),
    CommandRule(
        name="device_access",
        pattern=r"(?:^|[\s=<>'\"(:])/dev/(?!null\b)",
        description="Raw device access",
    ),
    CommandRule(
        name="remote_script",
        pattern=r"\b(?:curl|wget)\b[^|;&]*\|\s*(?:ba|z)?sh\b",
        description="Piping a downloaded script into a shell",
    ),
]


ALLOWED_COMMAND_PATHS = ("/dev/null",)

SHELL_INTERPRETERS = ("bash", "sh")


def _path_operand(token: str) -> Optional[str]:
    """Return the path-like part of a command token, if it has one.

    ``--out=/x`` and ``of=/x`` contribute their value. Plain flags and
    tokens that are neither absolute, home-relative nor carry a ``..``
    segment contribute nothing.
    """
    value = token.split("=", 1)[1] if "=" in token else token
    if value.startswith("-"):
        return None
    if value.startswith("/") or value.startswith("~") or ".." in value.split("/"):
        return value
    return None


def _is_within(path: str, root: str) -> bool:
    if root == "/":
        return path.startswith("/")
    return path == root or path.startswith(root.rstrip("/") + "/")


class Guard:
    """Allow/deny decisions for workspace paths and command tokens."""

    def __init__(
        self,
        settings: Optional[GuardSettings] = None,
        rules: Optional[Iterable[CommandRule]] = None,
    ):
        self.settings = settings or config.guard
        self.rules: List[CommandRule] = list(
            rules if rules is not None else DEFAULT_COMMAND_RULES
        )
        for index, pattern in enumerate(self.settings.extra_deny_patterns):
            self.rules.append(
                CommandRule(
                    name=f"configured_{index}",
                    pattern=pattern,
                    description="Configured deny pattern",
                )
            )
        self._compiled = [(rule, re.compile(rule.pattern)) for rule in self.rules]

    @property
    def system_directories(self) -> List[str]:
        return self.settings.system_directories

    def check_path(self, path: str, workspace_root: str) -> GuardVerdict:
        if not path or not path.strip():
            return GuardVerdict(allowed=False, reason="Empty path")
        if "\x00" in path:
            return GuardVerdict(allowed=False, reason="Path contains a NUL byte")
        if ".." in path:
            return GuardVerdict(
                allowed=False, reason=f"Parent-directory traversal in path: {path}"
            )
        if path.startswith("~"):
            return GuardVerdict(
                allowed=False, reason=f"Home-directory reference in path: {path}"
            )

        root = posixpath.normpath(workspace_root)
        candidate = path if path.startswith("/") else posixpath.join(root, path)
        resolved = posixpath.normpath(candidate)

        for system_dir in self.system_directories:
            # A workspace that itself lives under a system directory is
            # bounded by the containment check below instead.
            if _is_within(resolved, system_dir) and not _is_within(root, system_dir):
                return GuardVerdict(
                    allowed=False,
                    reason=f"Path references system directory {system_dir}: {path}",
                )

        if not _is_within(resolved, root):
            return GuardVerdict(
                allowed=False, reason=f"Path resolves outside workspace {root}: {path}"
            )
        return GuardVerdict(allowed=True)

    def check_command(self, tokens: Sequence[str]) -> GuardVerdict:
        if not tokens:
            return GuardVerdict(allowed=False, reason="Empty command")
        text = " ".join(str(token) for token in tokens)
        if "\x00" in text:
            return GuardVerdict(allowed=False, reason="Command contains a NUL byte")
        for rule, compiled in self._compiled:
            if rule.enabled and compiled.search(text):
                return GuardVerdict(
                    allowed=False,
                    reason=f"Command blocked ({rule.description})",
                    rule=rule.name,
                )
        return GuardVerdict(allowed=True)

    def check_command_paths(
        self, tokens: Sequence[str], workspace_root: str
    ) -> GuardVerdict:
        """Run every path operand of a command through ``check_path``.

        The script of a ``bash -c``/``sh -c`` invocation is not split
        into paths; it is covered by the denylist in ``check_command``.
        """
        tokens = [str(token) for token in tokens]
        script_index = None
        if (
            len(tokens) >= 3
            and posixpath.basename(tokens[0]) in SHELL_INTERPRETERS
            and tokens[1] == "-c"
        ):
            script_index = 2

        for index, token in enumerate(tokens):
            if index == script_index:
                continue
            operand = _path_operand(token)
            if operand is None or operand in ALLOWED_COMMAND_PATHS:
                continue
            verdict = self.check_path(operand, workspace_root)
            if not verdict.allowed:
                return GuardVerdict(
                    allowed=False,
                    reason=f"Command argument rejected: {verdict.reason}",
                    rule="path_argument",
                )
        return GuardVerdict(allowed=True)

    def check_sandbox_id(self, sandbox_id: str) -> GuardVerdict:
        if not sandbox_id or not _SANDBOX_ID_PATTERN.match(sandbox_id):
            return GuardVerdict(allowed=False, reason=f"Malformed sandbox id: {sandbox_id!r}")
        allowed = self.settings.allowed_sandbox_ids
        if allowed and sandbox_id not in allowed:
            return GuardVerdict(
                allowed=False, reason=f"Sandbox {sandbox_id} is not in the allow-list"
            )
        return GuardVerdict(allowed=True)

    def is_safe_path(self, path: str, workspace_root: str) -> bool:
        return self.check_path(path, workspace_root).allowed

    def is_safe_command(self, tokens: Sequence[str]) -> bool:
        return self.check_command(tokens).allowed

    def resolve_path(self, path: str, workspace_root: str) -> str:
        """Return the normalised absolute form of ``path``.

        Raises:
            SecurityViolation: If the guard rejects the path.
        """
        verdict = self.check_path(path, workspace_root)
        if not verdict.allowed:
            logger.warning(f"Guard rejected path: {verdict.reason}")
            raise SecurityViolation(verdict.reason)
        root = posixpath.normpath(workspace_root)
        candidate = path if path.startswith("/") else posixpath.join(root, path)
        return posixpath.normpath(candidate)

    def require_command(self, tokens: Sequence[str]) -> None:
        verdict = self.check_command(tokens)
        if not verdict.allowed:
            logger.warning(f"Guard rejected command: {verdict.reason}")
            raise SecurityViolation(verdict.reason)


def to_relative(path: str, workspace_root: str) -> str:
    """Express an absolute workspace path relative to the workspace root."""
    root = posixpath.normpath(workspace_root)
    normalised = posixpath.normpath(path)
    if normalised == root:
        return "."
    if _is_within(normalised, root):
        return posixpath.relpath(normalised, root)
    return normalised


_default_guard: Optional[Guard] = None


def get_guard() -> Guard:
    global _default_guard
    if _default_guard is None:
        _default_guard = Guard()
    return _default_guard


def is_safe_path(path: str, workspace_root: str) -> bool:
    return get_guard().is_safe_path(path, workspace_root)


def is_safe_command(tokens: Sequence[str]) -> bool:
    return get_guard().is_safe_command(tokens)
