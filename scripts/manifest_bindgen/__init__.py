"""
manifest_bindgen - binding generation framework for compiled array libraries

This framework reads the JSON manifest describing a native library's C ABI
(array types, opaque types with optional record fields and entry points) and
expands it into foreign declarations plus a wrapped API for a target
language. Backends customize naming, marshalling and artifact layout.
"""

from .errors import BindgenError, ManifestError, OutputError, ConfigError
from .manifest import (
    Manifest, ArrayType, OpaqueType, Record, RecordField, Entry, EntryArg, Knob, NativeBackend, ELEM_TYPES,
)
from .types import TypeClass, Kind, ResolvedType, TypeResolver, classify
from .codegen import CodeGen, Fragments
from .foreign import ForeignFn
from .backend import Backend
from .array import ArrayGenerator, ArrayInfo
from .opaque import OpaqueGenerator, OpaqueInfo, RecordInfo, FieldInfo
from .entry import EntryGenerator, EntryInfo, Param
from .ocaml import OCamlBackend
from .rust import RustBackend
from .python import PythonBackend
from .generator import Generator, Config, BACKENDS, get_backend, lang_for_path

__all__ = [
    'BindgenError', 'ManifestError', 'OutputError', 'ConfigError',
    'Manifest', 'ArrayType', 'OpaqueType', 'Record', 'RecordField', 'Entry', 'EntryArg',
    'Knob', 'NativeBackend', 'ELEM_TYPES',
    'TypeClass', 'Kind', 'ResolvedType', 'TypeResolver', 'classify',
    'CodeGen', 'Fragments',
    'ForeignFn',
    'Backend',
    'ArrayGenerator', 'ArrayInfo',
    'OpaqueGenerator', 'OpaqueInfo', 'RecordInfo', 'FieldInfo',
    'EntryGenerator', 'EntryInfo', 'Param',
    'OCamlBackend', 'RustBackend', 'PythonBackend',
    'Generator', 'Config', 'BACKENDS', 'get_backend', 'lang_for_path',
]
