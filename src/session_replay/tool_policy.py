from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Literal

from loguru import logger

RuleKind = Literal["allow", "deny"]


@dataclass(frozen=True)
class ToolDeclaration:
    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolRule:
    kind: RuleKind
    tools: tuple[str, ...]

    def __post_init__(self) -> None:
        if self.kind not in ("allow", "deny"):
            raise ValueError(f"Unknown tool rule kind: {self.kind!r}")


class ToolPolicy:
    """Declared tools plus ordered allow/deny rules.

    A tool is available unless denied. Once any allow rule exists, a tool must
    also be named by an allow rule. Deny wins over allow.
    """

    DISALLOWED_FLAG = "--disallowedTools"
    ALLOWED_FLAG = "--allowedTools"

    def __init__(self, tools: Iterable[ToolDeclaration] = (), rules: Iterable[ToolRule] = ()):
        self._tools: dict[str, ToolDeclaration] = {t.name: t for t in tools}
        self._rules: list[ToolRule] = list(rules)

    def register(self, tool: ToolDeclaration) -> None:
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> ToolDeclaration | None:
        return self._tools.get(name)

    def declared_tools(self) -> list[ToolDeclaration]:
        return list(self._tools.values())

    @property
    def rules(self) -> list[ToolRule]:
        return list(self._rules)

    def apply_rules(self, rules: Iterable[ToolRule]) -> None:
        self._rules = list(rules)

    def allow(self, *names: str) -> None:
        self._rules.append(ToolRule("allow", tuple(names)))

    def deny(self, *names: str) -> None:
        self._rules.append(ToolRule("deny", tuple(names)))

    @property
    def has_allow_list(self) -> bool:
        return any(rule.kind == "allow" for rule in self._rules)

    def denied_names(self) -> list[str]:
        return _ordered_names(rule for rule in self._rules if rule.kind == "deny")

    def allowed_names(self) -> list[str]:
        denied = set(self.denied_names())
        return [
            name
            for name in _ordered_names(rule for rule in self._rules if rule.kind == "allow")
            if name not in denied
        ]

    def is_available(self, name: str) -> bool:
        if name in self.denied_names():
            return False
        if self.has_allow_list:
            return name in self.allowed_names()
        return True

    def available_tools(self) -> list[ToolDeclaration]:
        return [tool for tool in self._tools.values() if self.is_available(tool.name)]

    def narrowed(self, names: Iterable[str]) -> ToolPolicy:
        """Copy restricted to ``names``, intersected with any existing allow list."""
        requested = list(dict.fromkeys(names))
        if self.has_allow_list:
            current = set(self.allowed_names())
            requested = [name for name in requested if name in current]
        deny_rules = [rule for rule in self._rules if rule.kind == "deny"]
        return ToolPolicy(self._tools.values(), [*deny_rules, ToolRule("allow", tuple(requested))])

    def cli_flags(self) -> list[str]:
        """Command-line flags that make the CLI enforce this policy.

        An allow list that resolves to nothing (every allowed tool also denied,
        or ``narrowed(())``) is still passed, as ``--allowedTools ""``.
        Leaving the flag out would let the CLI use every tool.
        """
        flags: list[str] = []
        denied = self.denied_names()
        if denied:
            flags.extend([self.DISALLOWED_FLAG, ",".join(denied)])
        if self.has_allow_list:
            allowed = self.allowed_names()
            if not allowed:
                logger.debug(f"Allow list resolves to no tools; passing an empty {self.ALLOWED_FLAG}")
            flags.extend([self.ALLOWED_FLAG, ",".join(allowed)])
        return flags


def _ordered_names(rules: Iterable[ToolRule]) -> list[str]:
    seen: dict[str, None] = {}
    for rule in rules:
        for name in rule.tools:
            seen.setdefault(name, None)
    return list(seen)
