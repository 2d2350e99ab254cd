"""
Entry point binding generation module

Declares the compiled entry function and hands the wrapped call to the
backend.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING

from .codegen import as_ident
from .errors import ManifestError
from .foreign import ForeignFn
from .types import ResolvedType

if TYPE_CHECKING:
    from .backend import Backend
    from .codegen import Fragments
    from .manifest import Entry
    from .types import TypeResolver


@dataclass(frozen=True)
class Param:
    """Entry input or output slot"""
    name: str
    resolved: ResolvedType


@dataclass(frozen=True)
class EntryInfo:
    """Entry point resolved for one backend"""
    name: str
    ident: str
    cfun: str
    inputs: tuple[Param, ...]
    outputs: tuple[Param, ...]

    @property
    def returns_tuple(self) -> bool:
        """A single output is returned unwrapped, never as a 1-tuple"""
        return len(self.outputs) > 1


class EntryGenerator:
    """Generates entry point wrappers"""

    def __init__(self, backend: 'Backend', resolver: 'TypeResolver'):
        self.backend = backend
        self.resolver = resolver
        self._idents: dict[str, str] = {}

    def generate(self, name: str, entry: 'Entry', frags: 'Fragments') -> EntryInfo:
        """Emit the declaration and the wrapped call for one entry point"""
        ident = as_ident(name)
        if ident in self._idents:
            raise ManifestError(
                f'entry points {self._idents[ident]!r} and {name!r} map to the same identifier {ident!r}',
            )
        self._idents[ident] = name

        info = EntryInfo(
            name=name,
            ident=ident,
            cfun=entry.cfun,
            inputs=tuple(Param(f'input{i}', self.resolver.resolve(arg.type_ref))
                         for i, arg in enumerate(entry.inputs)),
            outputs=tuple(Param(f'out{i}', self.resolver.resolve(arg.type_ref))
                          for i, arg in enumerate(entry.outputs)),
        )

        self.backend.add_foreign(frags, self.declaration(info))
        self.backend.gen_entry(info, frags)
        return info

    def declaration(self, info: EntryInfo) -> ForeignFn:
        """Context, then one output pointer per output, then the inputs"""
        b = self.backend
        fn = ForeignFn(info.cfun).arg('ctx', b.context_t)
        for out in info.outputs:
            fn.arg(out.name, b.ptr(out.resolved.ctype))
        for inp in info.inputs:
            fn.arg(inp.name, b.input_ctype(inp.resolved))
        return fn.returns(b.int_t)
