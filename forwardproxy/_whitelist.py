from dataclasses import dataclass
from typing import Iterable, Tuple, Union

from ._config import ConfigurationError


class Wildcard:
    """Matches any run of zero or more characters."""

    def __repr__(self) -> str:
        return "WILDCARD"


WILDCARD = Wildcard()

# A literal segment is a plain string.
Token = Union[str, Wildcard]


def compile_pattern(pattern: str) -> Tuple[Token, ...]:
    """
    Compile a whitelist pattern into a tuple of tokens.

    Every `*` becomes a WILDCARD marker, everything else is kept as
    literal text. Runs of `*` collapse into a single marker.

        >>> compile_pattern("*.example.com")
        (WILDCARD, '.example.com')
    """
    if not isinstance(pattern, str):
        raise ConfigurationError(f"Whitelist pattern must be a string, not {pattern!r}")
    if not pattern:
        raise ConfigurationError("Whitelist pattern must not be empty")
    if any(c.isspace() or not c.isprintable() for c in pattern):
        raise ConfigurationError(f"Whitelist pattern contains whitespace or control characters: {pattern!r}")
    if "" in pattern.split("."):
        # Such a pattern could never match: hosts with empty labels are refused.
        raise ConfigurationError(f"Whitelist pattern has an empty label: {pattern!r}")

    tokens = []
    for i, literal in enumerate(pattern.split("*")):
        if i > 0 and (not tokens or tokens[-1] is not WILDCARD):
            tokens.append(WILDCARD)
        if literal:
            tokens.append(literal)
    return tuple(tokens)


@dataclass(frozen=True)
class WhitelistRule:
    pattern: str
    tokens: Tuple[Token, ...]

    @classmethod
    def from_pattern(cls, pattern: str) -> "WhitelistRule":
        return cls(pattern, compile_pattern(pattern))

    def matches(self, host: str) -> bool:
        """Does the rule match the *whole* of `host`?"""
        tokens = self.tokens
        if not any(t is WILDCARD for t in tokens):
            return host == "".join(tokens)

        head = tokens[0] if tokens[0] is not WILDCARD else ""
        tail = tokens[-1] if tokens[-1] is not WILDCARD else ""
        if len(head) + len(tail) > len(host):
            return False
        if not (host.startswith(head) and host.endswith(tail)):
            return False

        # Whatever sits between the anchored ends must appear in order.
        start = 1 if head else 0
        stop = len(tokens) - 1 if tail else len(tokens)
        position, end = len(head), len(host) - len(tail)
        for token in tokens[start:stop]:
            if token is WILDCARD:
                continue
            found = host.find(token, position, end)
            if found < 0:
                return False
            position = found + len(token)
        return True


def strip_port(target: str) -> str:
    """
    Drop a `:port` suffix, delimited by the last colon.

    A bracketed IPv6 literal without a port is returned unchanged.
    """
    if target.endswith("]"):
        return target
    host, colon, _ = target.rpartition(":")
    return host if colon else target


def is_valid_hostname(host: str) -> bool:
    # No empty labels: rules out "", ".example.com", "a..b" and "example.com."
    return bool(host) and all(host.split("."))


class Whitelist:
    """
    An ordered set of compiled whitelist rules.

    Read-only once built, so any number of handlers may share one.
    """

    def __init__(self, rules: Iterable[WhitelistRule] = ()):
        self._rules = tuple(rules)

    @classmethod
    def from_patterns(cls, patterns: Iterable[str]) -> "Whitelist":
        """Raises ConfigurationError on the first malformed pattern."""
        return cls(WhitelistRule.from_pattern(p) for p in patterns)

    @property
    def rules(self) -> Tuple[WhitelistRule, ...]:
        return self._rules

    def matching_rule(self, target: str) -> Union[WhitelistRule, None]:
        host = strip_port(target)
        if not is_valid_hostname(host):
            return None
        for rule in self._rules:
            if rule.matches(host):
                return rule
        return None

    def is_allowed(self, target: str) -> bool:
        """`target` is either `host` or `host:port`; only the host is checked."""
        return self.matching_rule(target) is not None

    def __len__(self) -> int:
        return len(self._rules)

    def __repr__(self) -> str:
        return f"Whitelist({[r.pattern for r in self._rules]!r})"
