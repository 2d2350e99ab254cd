"""
Array binding generation module

Declares the native constructors, accessors and release function of an
array type and hands the wrapper to the backend.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING

from .foreign import ForeignFn
from .types import ResolvedType

if TYPE_CHECKING:
    from .backend import Backend
    from .codegen import Fragments
    from .manifest import ArrayType
    from .types import TypeResolver


@dataclass(frozen=True)
class ArrayInfo:
    """Everything a backend needs to render an array wrapper"""
    resolved: ResolvedType
    elemtype: str
    rank: int
    elem_type: str   # host element type
    elem_ctype: str  # foreign element type
    elem_tag: str    # bulk storage element tag
    new_fn: str
    new_raw_fn: str
    free_fn: str
    values_fn: str
    values_raw_fn: str
    shape_fn: str

    @property
    def dims(self) -> list[str]:
        return [f'dim{i}' for i in range(self.rank)]


class ArrayGenerator:
    """Generates array type bindings"""

    def __init__(self, backend: 'Backend', resolver: 'TypeResolver'):
        self.backend = backend
        self.resolver = resolver
        self._emitted: dict[tuple[str, int], ArrayInfo] = {}

    def generate(self, name: str, ty: 'ArrayType', frags: 'Fragments') -> ArrayInfo:
        """Register an array type and emit its declarations and wrapper"""
        key = (ty.elemtype, ty.rank)
        if key in self._emitted:
            # Same element type and rank: alias the existing wrapper
            info = self._emitted[key]
            self.resolver.register(name, info.resolved)
            return info

        info = self._make_info(name, ty)
        self.resolver.register(name, info.resolved)
        self._emitted[key] = info

        handle_decl = self.backend.handle_decl(info.resolved)
        if handle_decl:
            frags.decls.append(handle_decl)
        for fn in self.declarations(info):
            self.backend.add_foreign(frags, fn)

        self.backend.gen_array(info, frags)
        return info

    def _make_info(self, name: str, ty: 'ArrayType') -> ArrayInfo:
        elemtype = ty.elemtype
        rank = ty.rank
        suffix = f'{elemtype}_{rank}d'
        symbol = self.backend.symbol
        return ArrayInfo(
            resolved=self.backend.array_type(name, elemtype, rank),
            elemtype=elemtype,
            rank=rank,
            elem_type=self.resolver.get_type(elemtype),
            elem_ctype=self.resolver.get_ctype(elemtype),
            elem_tag=self.resolver.get_elem_tag(elemtype),
            new_fn=symbol(f'new_{suffix}'),
            new_raw_fn=symbol(f'new_raw_{suffix}'),
            free_fn=symbol(f'free_{suffix}'),
            values_fn=symbol(f'values_{suffix}'),
            values_raw_fn=symbol(f'values_raw_{suffix}'),
            shape_fn=symbol(f'shape_{suffix}'),
        )

    def declarations(self, info: ArrayInfo) -> list[ForeignFn]:
        """Native functions needed to construct, read, query and free an array"""
        b = self.backend
        handle = info.resolved.ctype

        new = (ForeignFn(info.new_fn)
               .arg('ctx', b.context_t)
               .arg('data', b.const_ptr(info.elem_ctype)))
        for dim in info.dims:
            new.arg(dim, b.int64_t)
        new.returns(handle)

        new_raw = (ForeignFn(info.new_raw_fn)
                   .arg('ctx', b.context_t)
                   .arg('data', b.const_ptr(b.byte_t))
                   .arg('offset', b.int64_t))
        for dim in info.dims:
            new_raw.arg(dim, b.int64_t)
        new_raw.returns(handle)

        free = (ForeignFn(info.free_fn)
                .arg('ctx', b.context_t)
                .arg('arr', handle)
                .returns(b.int_t))

        values = (ForeignFn(info.values_fn)
                  .arg('ctx', b.context_t)
                  .arg('arr', handle)
                  .arg('data', b.ptr(info.elem_ctype))
                  .returns(b.int_t))

        values_raw = (ForeignFn(info.values_raw_fn)
                      .arg('ctx', b.context_t)
                      .arg('arr', handle)
                      .returns(b.ptr(b.byte_t)))

        shape = (ForeignFn(info.shape_fn)
                 .arg('ctx', b.context_t)
                 .arg('arr', handle)
                 .returns(b.const_ptr(b.int64_t)))

        return [new, new_raw, free, values, values_raw, shape]
