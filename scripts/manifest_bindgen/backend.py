"""
Backend base module

A backend owns one target language: its scalar mapping tables, its foreign
type vocabulary, the rendering of declarations and wrappers, and the final
layout of the generated artifacts.
"""

from abc import ABC, abstractmethod
from typing import Optional, TYPE_CHECKING

from .errors import ManifestError
from .types import ResolvedType, TypeResolver

if TYPE_CHECKING:
    from .array import ArrayInfo
    from .codegen import Fragments
    from .entry import EntryInfo
    from .foreign import ForeignFn
    from .manifest import Manifest
    from .opaque import OpaqueInfo


class Backend(ABC):
    """Base class for target language backends"""

    name: str = ''
    # Artifact suffixes, primary artifact first
    suffixes: tuple[str, ...] = ()
    # External formatter command, the artifact path is appended
    formatter: Optional[list[str]] = None

    # Foreign type vocabulary
    context_t: str = ''
    config_t: str = ''
    int_t: str = ''
    int64_t: str = ''
    byte_t: str = ''
    void_t: str = ''
    string_t: str = ''   # string passed to native code
    cstring_t: str = ''  # string returned by native code, released with free

    def __init__(self, prefix: str = 'futhark'):
        self.prefix = prefix

    def symbol(self, name: str) -> str:
        """Native symbol name under the library prefix"""
        return f'{self.prefix}_{name}'

    @abstractmethod
    def ptr(self, type_str: str) -> str:
        """Mutable pointer to a foreign type"""

    def const_ptr(self, type_str: str) -> str:
        """Read-only pointer to a foreign type"""
        return self.ptr(type_str)

    def input_ctype(self, resolved: ResolvedType) -> str:
        """Foreign type of a value passed into native code"""
        return resolved.ctype

    @abstractmethod
    def make_resolver(self) -> TypeResolver:
        """Fresh resolver seeded with the primitive mapping tables"""

    @abstractmethod
    def array_type(self, name: str, elemtype: str, rank: int) -> ResolvedType:
        """Resolved wrapper type of an array"""

    @abstractmethod
    def opaque_type(self, name: str, ident: str) -> ResolvedType:
        """Resolved wrapper type of an opaque value"""

    def handle_decl(self, resolved: ResolvedType) -> Optional[str]:
        """Declaration of a native handle type, if the backend needs one"""
        return None

    @abstractmethod
    def declare(self, fn: 'ForeignFn') -> str:
        """Render one foreign function declaration"""

    def add_foreign(self, frags: 'Fragments', fn: 'ForeignFn'):
        """Record and render a foreign declaration"""
        if frags.find(fn.name) is not None:
            raise ManifestError(
                f'native function {fn.name!r} is declared twice',
                'every type operation and entry point needs its own symbol',
            )
        frags.foreign.append(fn)
        frags.decls.append(self.declare(fn))

    @abstractmethod
    def gen_array(self, info: 'ArrayInfo', frags: 'Fragments'):
        """Emit the array wrapper"""

    @abstractmethod
    def gen_opaque(self, info: 'OpaqueInfo', frags: 'Fragments'):
        """Emit the opaque (or record) wrapper"""

    @abstractmethod
    def gen_entry(self, info: 'EntryInfo', frags: 'Fragments'):
        """Emit the wrapped entry call"""

    @abstractmethod
    def assemble(self, manifest: 'Manifest', frags: 'Fragments') -> dict[str, str]:
        """Compose the artifacts, keyed by suffix"""

    def header_comment(self, manifest: 'Manifest') -> str:
        """First line of every artifact"""
        text = 'Generated by manifest-bindgen, do not edit'
        if manifest.version:
            text += f' (compiler {manifest.version})'
        return text
