"""
Type classification and resolution module

Classifies manifest types and resolves type references to per-backend
host and foreign type names.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import ManifestError
from .manifest import ELEM_TYPES, ArrayType, OpaqueType, Type


class TypeClass(Enum):
    """Classification of a manifest type entry"""
    ARRAY = 'array'
    OPAQUE = 'opaque'
    RECORD = 'record'


def classify(ty: Type) -> TypeClass:
    """Determine whether a type is an array, a plain opaque or a record"""
    if isinstance(ty, ArrayType):
        return TypeClass.ARRAY
    if isinstance(ty, OpaqueType):
        return TypeClass.RECORD if ty.record is not None else TypeClass.OPAQUE
    raise ManifestError(f'unknown manifest type {ty!r}')


class Kind(Enum):
    """Marshalling kind of a resolved type"""
    SCALAR = 'scalar'
    ARRAY = 'array'
    OPAQUE = 'opaque'


@dataclass(frozen=True)
class ResolvedType:
    """A type reference resolved for one backend

    name is the host type used in wrapper signatures, ctype the foreign
    type used in declarations and module the wrapper that adopts raw
    handles of this type (empty for scalars).
    """
    kind: Kind
    source: str
    name: str
    ctype: str
    module: str = ''
    elemtype: Optional[str] = None
    rank: int = 0

    @property
    def is_handle(self) -> bool:
        """Arrays and opaque values travel as native handles"""
        return self.kind is not Kind.SCALAR


class TypeResolver:
    """Per-run lookup tables from type names to target names

    The three tables are keyed by element kind; a lookup miss returns the
    key unchanged. Array and opaque types are registered while the type
    table is expanded, so later fields and entries resolve them by name.
    """

    def __init__(self, type_map: dict[str, str], ctype_map: dict[str, str],
                 elem_map: Optional[dict[str, str]] = None):
        self._types = dict(type_map)
        self._ctypes = dict(ctype_map)
        self._elems = dict(elem_map or {})
        self._resolved: dict[str, ResolvedType] = {}

    def get_type(self, name: str) -> str:
        """Host language type for a name"""
        return self._types.get(name, name)

    def get_ctype(self, name: str) -> str:
        """Foreign type for a name"""
        return self._ctypes.get(name, name)

    def get_elem_tag(self, name: str) -> str:
        """Bulk storage element tag for a name"""
        return self._elems.get(name, name)

    def register(self, name: str, resolved: ResolvedType):
        """Make a manifest type visible to every later lookup"""
        if name in self._resolved:
            raise ManifestError(f'type {name!r} registered twice')
        self._types[name] = resolved.name
        self._ctypes[name] = resolved.ctype
        self._resolved[name] = resolved

    def resolve(self, type_ref: str) -> ResolvedType:
        """Resolve a field, input or output type reference"""
        if type_ref in self._resolved:
            return self._resolved[type_ref]
        if type_ref in ELEM_TYPES:
            return ResolvedType(
                kind=Kind.SCALAR,
                source=type_ref,
                name=self.get_type(type_ref),
                ctype=self.get_ctype(type_ref),
                elemtype=type_ref,
            )
        raise ManifestError(
            f'type reference {type_ref!r} does not resolve to a primitive or a known type',
            'types must be declared before the fields and entry points that use them',
        )
