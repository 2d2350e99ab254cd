"""
Opaque binding generation module

Declares release, constructor and field projection functions for opaque
types, including record-like opaque types.
"""

from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING

from .codegen import as_ident
from .errors import ManifestError
from .foreign import ForeignFn
from .types import ResolvedType

if TYPE_CHECKING:
    from .backend import Backend
    from .codegen import Fragments
    from .manifest import OpaqueType, Record
    from .types import TypeResolver


@dataclass(frozen=True)
class FieldInfo:
    """Record field resolved for one backend"""
    name: str
    resolved: ResolvedType
    project_fn: str
    param: str     # constructor parameter name
    accessor: str  # projection accessor name


@dataclass(frozen=True)
class RecordInfo:
    """Record constructor and fields, in manifest order"""
    new_fn: str
    fields: tuple[FieldInfo, ...]


@dataclass(frozen=True)
class OpaqueInfo:
    """Everything a backend needs to render an opaque wrapper"""
    resolved: ResolvedType
    free_fn: str
    record: Optional[RecordInfo] = None


class OpaqueGenerator:
    """Generates opaque and record type bindings"""

    def __init__(self, backend: 'Backend', resolver: 'TypeResolver'):
        self.backend = backend
        self.resolver = resolver
        self._idents: dict[str, str] = {}

    def generate(self, name: str, ty: 'OpaqueType', frags: 'Fragments') -> OpaqueInfo:
        """Register an opaque type and emit its declarations and wrapper"""
        ident = as_ident(name)
        if ident in self._idents:
            raise ManifestError(
                f'opaque types {self._idents[ident]!r} and {name!r} map to the same identifier {ident!r}',
            )
        self._idents[ident] = name

        resolved = self.backend.opaque_type(name, ident)
        self.resolver.register(name, resolved)

        handle_decl = self.backend.handle_decl(resolved)
        if handle_decl:
            frags.decls.append(handle_decl)

        b = self.backend
        free = (ForeignFn(ty.free_fn)
                .arg('ctx', b.context_t)
                .arg('obj', resolved.ctype)
                .returns(b.int_t))
        b.add_foreign(frags, free)

        record = None
        if ty.record is not None:
            record = self._resolve_record(ty.record)
            for fn in self.record_declarations(resolved, record):
                b.add_foreign(frags, fn)

        info = OpaqueInfo(resolved=resolved, free_fn=ty.free_fn, record=record)
        self.backend.gen_opaque(info, frags)
        return info

    def _resolve_record(self, record: 'Record') -> RecordInfo:
        fields = []
        for field in record.fields:
            ident = as_ident(field.name)
            fields.append(FieldInfo(
                name=field.name,
                resolved=self.resolver.resolve(field.type_ref),
                project_fn=field.project_fn,
                param=f'field_{ident}',
                accessor=f'get_{ident}',
            ))
        return RecordInfo(new_fn=record.new_fn, fields=tuple(fields))

    def record_declarations(self, resolved: ResolvedType, record: RecordInfo) -> list[ForeignFn]:
        """Constructor taking one argument per field, then one projection per field"""
        b = self.backend

        new = (ForeignFn(record.new_fn)
               .arg('ctx', b.context_t)
               .arg('out', b.ptr(resolved.ctype)))
        for field in record.fields:
            new.arg(field.param, b.input_ctype(field.resolved))
        new.returns(b.int_t)

        decls = [new]
        for field in record.fields:
            decls.append(ForeignFn(field.project_fn)
                         .arg('ctx', b.context_t)
                         .arg('out', b.ptr(field.resolved.ctype))
                         .arg('obj', b.input_ctype(resolved))
                         .returns(b.int_t))
        return decls
