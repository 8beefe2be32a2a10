"""Allow/deny pattern matching for operation intents.

Deny signatures are a fixed list of destructive command shapes and are
evaluated before anything else, including autonomous session overrides.
Allow patterns come from configuration and are compiled once when the
matcher is built, never per call.

Provides:
- CompiledPattern: A source pattern tagged with its compiled matcher
- compile_glob: Convert a path glob (``*``, ``**``, ``?``) to a regex
- DENY_SIGNATURES: Built-in destructive command signatures
- PatternMatch: Classification plus the rule that fired
- PatternMatcher: Stateless classifier (ABSOLUTE_DENY / ABSOLUTE_ALLOW / NO_MATCH)
"""

import posixpath
import re
from dataclasses import dataclass

from approvals.core.config import ApprovalConfig
from approvals.core.intent import MatchResult, OperationIntent, OperationKind


@dataclass(frozen=True)
class CompiledPattern:
    """Source pattern kept alongside its compiled regex."""

    pattern: str
    matcher: re.Pattern

    def matches(self, text: str | None) -> bool:
        return bool(text) and self.matcher.search(text) is not None


def compile_glob(pattern: str) -> CompiledPattern:
    """Compile a path glob into an anchored regex.

    ``**/`` matches zero or more directories, ``**`` matches anything,
    ``*`` matches within one path segment and ``?`` one non-separator
    character.

    Args:
        pattern: Glob such as ``src/**`` or ``**/*.md``

    Returns:
        CompiledPattern whose matcher must match the whole path
    """
    out = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
            continue
        if pattern.startswith("**", i):
            out.append(".*")
            i += 2
            continue
        if char == "*":
            out.append("[^/]*")
        elif char == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(char))
        i += 1
    return CompiledPattern(pattern, re.compile("^" + "".join(out) + "$"))


def normalize_path(path: str | None) -> str:
    """Collapse separators, ``.`` and ``..`` segments; ``""`` for no path."""
    if not path:
        return ""
    path = posixpath.normpath(path.replace("\\", "/"))
    return "" if path == "." else path


def escapes_root(path: str) -> bool:
    """True for a normalized path that leaves the working tree."""
    return path.startswith(("/", "~")) or path == ".." or path.startswith("../")


# Command start: beginning of string or after a shell separator
_START = r"(?:^|[;&|]\s*)"

DENY_SIGNATURES: tuple[tuple[str, str], ...] = (
    ("recursive_root_delete", _START + r"rm\s+(?:-\S+\s+)*-\S*[rR]\S*\s+(?:-\S+\s+)*(?:/|~|\$HOME)"),
    ("disk_overwrite", _START + r"dd\s+.*\bof=/dev/"),
    ("filesystem_format", _START + r"(?:mkfs(?:\.\w+)?|fdisk|parted|wipefs)\b"),
    ("privilege_escalation", _START + r"(?:sudo|su|doas|pkexec)\b"),
    ("world_writable_root", _START + r"chmod\s+(?:-R\s+)?777\s+/"),
    ("remote_script_execution", r"\b(?:curl|wget)\b[^|]*\|\s*(?:sudo\s+)?(?:ba|z|da|k)?sh\b"),
    ("remote_script_execution", r"\b(?:ba|z)?sh\s+<\(\s*(?:curl|wget)\b"),
    ("fork_bomb", r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:"),
)

_ROOT_PATHS = {"/", "/*", "~", "~/", "~/*", "$HOME", "$HOME/"}

# Compound or redirected commands never qualify for a prefix allow
_CHAINING = re.compile(r"[;&|<>`\n]|\$\(")


@dataclass(frozen=True)
class PatternMatch:
    """Classification with the name or pattern of the rule that fired."""

    result: MatchResult
    rule: str | None = None


@dataclass(frozen=True)
class _PathRule:
    globs: tuple[CompiledPattern, ...]
    actions: frozenset[str]
    kinds: frozenset[OperationKind]


class PatternMatcher:
    """Classify intents against deny signatures and configured allow lists.

    Holds only compiled, immutable rules; classify() has no side effects
    and the same intent always yields the same result.
    """

    def __init__(self, config: ApprovalConfig | None = None):
        config = config or ApprovalConfig()
        self._deny = tuple(
            (name, CompiledPattern(regex, re.compile(regex))) for name, regex in DENY_SIGNATURES
        ) + tuple(
            ("configured_signature", CompiledPattern(regex, re.compile(regex)))
            for regex in config.extra_deny_signatures
        )
        self._prefixes = tuple(p.strip() for p in config.command_prefixes if p.strip())
        self._path_rules = tuple(
            _PathRule(
                globs=tuple(compile_glob(g) for g in rule.patterns),
                actions=frozenset(a.lower() for a in rule.actions),
                kinds=frozenset(rule.kinds),
            )
            for rule in config.path_rules
        )

    def classify(self, intent: OperationIntent) -> MatchResult:
        """Classify an intent as ABSOLUTE_DENY, ABSOLUTE_ALLOW or NO_MATCH."""
        return self.match(intent).result

    def match(self, intent: OperationIntent) -> PatternMatch:
        """Classify an intent and report which rule fired."""
        denied_by = self.deny_signature(intent)
        if denied_by:
            return PatternMatch(MatchResult.ABSOLUTE_DENY, denied_by)

        prefix = self._allowed_prefix(intent.command_text)
        if prefix:
            return PatternMatch(MatchResult.ABSOLUTE_ALLOW, prefix)

        glob = self._allowed_glob(intent.kind, intent.action, intent.target_path)
        if glob:
            return PatternMatch(MatchResult.ABSOLUTE_ALLOW, glob)

        return PatternMatch(MatchResult.NO_MATCH)

    def deny_signature(self, intent: OperationIntent) -> str | None:
        """Name of the deny signature the intent matches, if any."""
        command = (intent.command_text or "").strip()
        for name, signature in self._deny:
            if signature.matches(command):
                return name

        if (
            intent.kind == OperationKind.FILESYSTEM
            and intent.action.lower() == "delete"
            and normalize_path(intent.target_path).strip() in _ROOT_PATHS
        ):
            return "recursive_root_delete"
        return None

    def path_allowed(self, kind: OperationKind, action: str, path: str | None) -> bool:
        """True when a path/action pair is on a configured allow list."""
        return self._allowed_glob(kind, action, path) is not None

    def _allowed_prefix(self, command: str | None) -> str | None:
        if not command:
            return None
        command = command.strip()
        if _CHAINING.search(command):
            return None
        for prefix in self._prefixes:
            if command == prefix or command.startswith(prefix + " "):
                return prefix
        return None

    def _allowed_glob(self, kind: OperationKind, action: str, path: str | None) -> str | None:
        path = normalize_path(path)
        if not path or escapes_root(path):
            return None
        action = (action or "").lower()
        for rule in self._path_rules:
            if kind not in rule.kinds or action not in rule.actions:
                continue
            for glob in rule.globs:
                if glob.matches(path):
                    return glob.pattern
        return None
