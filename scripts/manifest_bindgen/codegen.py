"""
Code generation utilities

Provides the line buffer, fragment accumulator and naming helpers shared by
all backends.
"""

from dataclasses import dataclass, field
from typing import Optional, TYPE_CHECKING
import re

if TYPE_CHECKING:
    from .foreign import ForeignFn


class CodeGen:
    """Code generation helper with indentation support"""

    def __init__(self, indent_str: str = '    '):
        self._lines: list[str] = []
        self._indent: int = 0
        self._indent_str: str = indent_str

    def line(self, text: str = ''):
        """Add a line with current indentation"""
        if text:
            self._lines.append(self._indent_str * self._indent + text)
        else:
            self._lines.append('')

    def lines(self, *texts: str):
        """Add multiple lines"""
        for text in texts:
            self.line(text)

    def raw(self, text: str):
        """Add a multi-line fragment, indenting each non-empty line"""
        for text_line in text.split('\n'):
            self.line(text_line)

    def indent(self):
        """Increase indentation"""
        self._indent += 1

    def dedent(self):
        """Decrease indentation"""
        if self._indent > 0:
            self._indent -= 1

    def block(self, header: str, footer: Optional[str] = '}'):
        """Context manager for code blocks"""
        return _BlockContext(self, header, footer)

    def output(self) -> str:
        """Get generated code as string"""
        return '\n'.join(self._lines)


class _BlockContext:
    """Context manager for indented code blocks"""

    def __init__(self, gen: CodeGen, header: str, footer: Optional[str]):
        self._gen = gen
        self._header = header
        self._footer = footer

    def __enter__(self):
        self._gen.line(self._header)
        self._gen.indent()
        return self

    def __exit__(self, *args):
        self._gen.dedent()
        if self._footer is not None:
            self._gen.line(self._footer)


@dataclass
class Fragments:
    """Append-only output buffers of one generation run

    decls holds rendered foreign declarations (and handle type
    declarations), definitions holds wrapper code for the implementation
    artifact and interface holds the matching signatures for the optional
    interface artifact. entries holds entry wrappers and entry_signatures
    their interface, both emitted as one grouped block after the types.
    """
    decls: list[str] = field(default_factory=list)
    definitions: list[str] = field(default_factory=list)
    interface: list[str] = field(default_factory=list)
    entries: list[str] = field(default_factory=list)
    entry_signatures: list[str] = field(default_factory=list)
    foreign: list['ForeignFn'] = field(default_factory=list)

    def find(self, name: str) -> Optional['ForeignFn']:
        """Look up a declared foreign function by native name"""
        for fn in self.foreign:
            if fn.name == name:
                return fn
        return None


_NON_IDENT = re.compile(r'[^0-9A-Za-z]+')


def as_ident(name: str) -> str:
    """Turn a manifest name into a lower-level identifier

    Examples:
        pair -> pair
        (f32, f32) -> f32_f32
        0 -> t_0
    """
    result = _NON_IDENT.sub('_', name).strip('_')
    if not result or result[0].isdigit():
        result = 't_' + result
    return result


def as_pascal_case(name: str) -> str:
    """Convert an identifier to PascalCase

    Examples:
        pair -> Pair
        my_record -> MyRecord
        f32_f32 -> F32F32
    """
    return ''.join(first_uppercase(part) for part in as_ident(name).split('_') if part)


def first_uppercase(s: str) -> str:
    """Uppercase the first character only (array_f32_1d -> Array_f32_1d)"""
    return s[:1].upper() + s[1:]
