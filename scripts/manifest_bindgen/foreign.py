"""
Foreign declaration module

Describes one low-level external-call declaration. Backends render it
through their declare() method, the single place where a target
language's calling convention is spelled out.
"""

from dataclasses import dataclass, field


@dataclass
class ForeignFn:
    """Native function signature: name, ordered (label, type) args, return type"""
    name: str
    args: list[tuple[str, str]] = field(default_factory=list)
    ret: str = ''

    def arg(self, label: str, type_str: str) -> 'ForeignFn':
        self.args.append((label, type_str))
        return self

    def returns(self, type_str: str) -> 'ForeignFn':
        self.ret = type_str
        return self

    @property
    def arg_types(self) -> list[str]:
        return [t for _, t in self.args]
