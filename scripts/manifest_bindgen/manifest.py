"""
Manifest module

Reads and represents the JSON manifest describing a compiled library's ABI.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union
import json

from .errors import ManifestError

# Primitive element kinds, in table order
ELEM_TYPES = ('i8', 'i16', 'i32', 'i64', 'u8', 'u16', 'u32', 'u64', 'f32', 'f64')


class Knob(Enum):
    """Context configuration knob exposed for a native backend"""
    NONE = 'none'
    NUM_THREADS = 'num_threads'
    DEVICE = 'device'


class NativeBackend(Enum):
    """Native execution backend the library was compiled for"""
    C = 'c'
    MULTICORE = 'multicore'
    ISPC = 'ispc'
    OPENCL = 'opencl'
    CUDA = 'cuda'
    HIP = 'hip'
    PYTHON = 'python'
    PYOPENCL = 'pyopencl'

    @classmethod
    def parse(cls, raw: str) -> Optional['NativeBackend']:
        """Parse a backend selector, None if unrecognized"""
        try:
            return cls(raw.lower())
        except ValueError:
            return None

    @property
    def knob(self) -> Knob:
        if self in (NativeBackend.MULTICORE, NativeBackend.ISPC):
            return Knob.NUM_THREADS
        if self in (NativeBackend.CUDA, NativeBackend.OPENCL, NativeBackend.HIP):
            return Knob.DEVICE
        return Knob.NONE


@dataclass(frozen=True)
class ArrayType:
    """Dense N-dimensional array of a primitive element kind"""
    elemtype: str
    rank: int


@dataclass(frozen=True)
class RecordField:
    """Record field information"""
    name: str
    type_ref: str
    project_fn: str


@dataclass(frozen=True)
class Record:
    """Constructor and projections of a record-like opaque type"""
    new_fn: str
    fields: tuple[RecordField, ...]


@dataclass(frozen=True)
class OpaqueType:
    """Handle type released through an explicit free function"""
    free_fn: str
    record: Optional[Record] = None


Type = Union[ArrayType, OpaqueType]


@dataclass(frozen=True)
class EntryArg:
    """Entry point input or output"""
    type_ref: str
    name: str = ''


@dataclass(frozen=True)
class Entry:
    """Entry point information"""
    cfun: str
    inputs: tuple[EntryArg, ...] = ()
    outputs: tuple[EntryArg, ...] = ()


@dataclass
class Manifest:
    """Callable surface of a compiled native library"""
    types: dict[str, Type] = field(default_factory=dict)
    entry_points: dict[str, Entry] = field(default_factory=dict)
    backend: Optional[NativeBackend] = NativeBackend.C
    backend_name: str = 'c'
    version: str = ''

    @property
    def knob(self) -> Knob:
        """Configuration knob for the selected backend"""
        if self.backend is None:
            return Knob.NONE
        return self.backend.knob

    @classmethod
    def load(cls, json_path: str) -> 'Manifest':
        """Load a manifest from a JSON file"""
        try:
            with open(json_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except OSError as e:
            raise ManifestError(f'cannot read manifest {json_path}: {e.strerror}') from e
        except json.JSONDecodeError as e:
            raise ManifestError(f'invalid JSON in manifest {json_path}: {e}') from e
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> 'Manifest':
        """Create a manifest from an already decoded dictionary"""
        if not isinstance(data, dict):
            raise ManifestError('manifest must be a JSON object')

        types: dict[str, Type] = {}
        for name, decl in _get(data, 'types', dict, 'manifest', {}).items():
            types[name] = cls._parse_type(name, decl)

        entry_points: dict[str, Entry] = {}
        for name, decl in _get(data, 'entry_points', dict, 'manifest', {}).items():
            entry_points[name] = cls._parse_entry(name, decl)

        backend_name = _get(data, 'backend', str, 'manifest', 'c')
        return cls(
            types=types,
            entry_points=entry_points,
            backend=NativeBackend.parse(backend_name),
            backend_name=backend_name,
            version=str(data.get('version', '')),
        )

    @staticmethod
    def _parse_type(name: str, decl: dict) -> Type:
        where = f'type {name!r}'
        if not isinstance(decl, dict):
            raise ManifestError(f'{where} must be an object')
        kind = _get(decl, 'kind', str, where)

        if kind == 'array':
            elemtype = _get(decl, 'elemtype', str, where)
            if elemtype not in ELEM_TYPES:
                raise ManifestError(
                    f'{where} has unsupported element type {elemtype!r}',
                    f'expected one of {", ".join(ELEM_TYPES)}',
                )
            rank = _get(decl, 'rank', int, where)
            if rank < 0:
                raise ManifestError(f'{where} has negative rank {rank}')
            return ArrayType(elemtype=elemtype, rank=rank)

        elif kind == 'opaque':
            ops = _get(decl, 'ops', dict, where)
            free_fn = _get(ops, 'free', str, f'{where} ops')
            record = None
            if decl.get('record') is not None:
                record = Manifest._parse_record(where, decl['record'])
            return OpaqueType(free_fn=free_fn, record=record)

        raise ManifestError(f'{where} has unknown kind {kind!r}', 'expected "array" or "opaque"')

    @staticmethod
    def _parse_record(where: str, decl: dict) -> Record:
        where = f'{where} record'
        if not isinstance(decl, dict):
            raise ManifestError(f'{where} must be an object')
        fields = []
        for i, f in enumerate(_get(decl, 'fields', list, where)):
            fwhere = f'{where} field {i}'
            if not isinstance(f, dict):
                raise ManifestError(f'{fwhere} must be an object')
            fields.append(RecordField(
                name=str(_get(f, 'name', (str, int), fwhere)),
                type_ref=_get(f, 'type', str, fwhere),
                project_fn=_get(f, 'project', str, fwhere),
            ))
        return Record(new_fn=_get(decl, 'new', str, where), fields=tuple(fields))

    @staticmethod
    def _parse_entry(name: str, decl: dict) -> Entry:
        where = f'entry point {name!r}'
        if not isinstance(decl, dict):
            raise ManifestError(f'{where} must be an object')
        return Entry(
            cfun=_get(decl, 'cfun', str, where),
            inputs=Manifest._parse_args(where, 'inputs', decl),
            outputs=Manifest._parse_args(where, 'outputs', decl),
        )

    @staticmethod
    def _parse_args(where: str, key: str, decl: dict) -> tuple[EntryArg, ...]:
        args = []
        for i, arg in enumerate(_get(decl, key, list, where, [])):
            awhere = f'{where} {key}[{i}]'
            if not isinstance(arg, dict):
                raise ManifestError(f'{awhere} must be an object')
            args.append(EntryArg(
                type_ref=_get(arg, 'type', str, awhere),
                name=str(arg.get('name', '')),
            ))
        return tuple(args)


_MISSING = object()


def _get(obj: dict, key: str, expected, where: str, default=_MISSING):
    """Fetch a required (or defaulted) key and check its JSON type"""
    if key not in obj:
        if default is _MISSING:
            raise ManifestError(f'{where} is missing required key {key!r}')
        return default
    value = obj[key]
    # bool is an int subclass but never a valid rank or name
    if isinstance(value, bool) or not isinstance(value, expected):
        raise ManifestError(f'{where} key {key!r} has invalid value {value!r}')
    return value
