import copy
import ctypes
import re
import sys
import types
from collections.abc import Callable
from pathlib import Path

import pytest

SCRIPTS_DIR = Path(__file__).resolve().parent.parent / 'scripts'
if str(SCRIPTS_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPTS_DIR))

from manifest_bindgen import Generator, Manifest, get_backend  # noqa: E402


SAMPLE_MANIFEST = {
    'backend': 'multicore',
    'version': '0.25.2',
    'types': {
        '[]f32': {
            'kind': 'array',
            'elemtype': 'f32',
            'rank': 1,
            'ctype': 'struct futhark_f32_1d *',
            'ops': {'free': 'futhark_free_f32_1d', 'shape': 'futhark_shape_f32_1d'},
        },
        '[][]i64': {'kind': 'array', 'elemtype': 'i64', 'rank': 2},
        'state': {'kind': 'opaque', 'ops': {'free': 'futhark_free_opaque_state'}},
        'pair': {
            'kind': 'opaque',
            'ops': {'free': 'futhark_free_opaque_pair'},
            'record': {
                'new': 'futhark_new_opaque_pair',
                'fields': [
                    {'name': '0', 'type': 'f32', 'project': 'futhark_project_opaque_pair_0'},
                    {'name': '1', 'type': '[]f32', 'project': 'futhark_project_opaque_pair_1'},
                ],
            },
        },
    },
    'entry_points': {
        'main': {
            'cfun': 'futhark_entry_main',
            'inputs': [{'name': 'xs', 'type': '[]f32'}],
            'outputs': [{'type': '[]f32'}],
        },
        'sum_pair': {
            'cfun': 'futhark_entry_sum_pair',
            'inputs': [{'name': 'p', 'type': 'pair'}],
            'outputs': [{'type': 'f32'}, {'type': '[]f32'}],
        },
        'reset': {'cfun': 'futhark_entry_reset', 'inputs': [], 'outputs': []},
    },
}


@pytest.fixture
def sample_data() -> dict:
    return copy.deepcopy(SAMPLE_MANIFEST)


@pytest.fixture
def make_manifest_data() -> Callable[..., dict]:
    def _make_manifest_data(types: dict | None = None, entry_points: dict | None = None,
                            backend: str = 'c') -> dict:
        return {
            'backend': backend,
            'types': types or {},
            'entry_points': entry_points or {},
        }

    return _make_manifest_data


@pytest.fixture
def array_decl() -> Callable[[str, int], dict]:
    def _array_decl(elemtype: str, rank: int) -> dict:
        return {'kind': 'array', 'elemtype': elemtype, 'rank': rank}

    return _array_decl


@pytest.fixture
def opaque_decl() -> Callable[..., dict]:
    def _opaque_decl(name: str, fields: list[tuple[str, str]] | None = None) -> dict:
        decl = {'kind': 'opaque', 'ops': {'free': f'futhark_free_opaque_{name}'}}
        if fields is not None:
            decl['record'] = {
                'new': f'futhark_new_opaque_{name}',
                'fields': [
                    {'name': field, 'type': type_ref, 'project': f'futhark_project_opaque_{name}_{field}'}
                    for field, type_ref in fields
                ],
            }
        return decl

    return _opaque_decl


@pytest.fixture
def entry_decl() -> Callable[..., dict]:
    def _entry_decl(name: str, inputs: list[str], outputs: list[str]) -> dict:
        return {
            'cfun': f'futhark_entry_{name}',
            'inputs': [{'name': f'in{i}', 'type': t} for i, t in enumerate(inputs)],
            'outputs': [{'type': t} for t in outputs],
        }

    return _entry_decl


@pytest.fixture
def generate() -> Callable[..., dict[str, str]]:
    def _generate(lang: str, data: dict, prefix: str = 'futhark') -> dict[str, str]:
        return Generator(get_backend(lang, prefix)).generate(Manifest.from_dict(data))

    return _generate


class FakeFn:
    """Callable standing in for one native function"""

    def __init__(self, lib: 'FakeLib', name: str, impl: Callable):
        self.lib = lib
        self.name = name
        self.impl = impl
        self.argtypes = None
        self.restype = None

    def __call__(self, *args):
        self.lib.calls.append((self.name, args))
        if self.name in self.lib.null:
            return None
        if self.name in self.lib.status:
            return self.lib.status[self.name]
        return self.impl(*args)


class FakeLib:
    """In-memory stand-in for a compiled library

    Arrays live in a handle -> (shape, values) table. Functions without a
    built-in behaviour return 0 unless a test defines them.
    """

    def __init__(self, prefix: str = 'futhark'):
        self.prefix = prefix
        self.calls: list[tuple[str, tuple]] = []
        self.arrays: dict[int, tuple[tuple[int, ...], list]] = {}
        self.opaques: dict[int, tuple] = {}
        self.status: dict[str, int] = {}
        self.null: set[str] = set()
        self.error_message: str | None = None
        self._fns: dict[str, FakeFn] = {}
        self._keep: list = []
        self._next_handle = 0x1000
        self._array_re = re.compile(
            rf'^{re.escape(prefix)}_(new|free|values|shape)_([iuf]\d+)_(\d+)d$'
        )

    def __getattr__(self, name: str) -> FakeFn:
        if name.startswith('_'):
            raise AttributeError(name)
        return self._fn(name)

    def _fn(self, name: str) -> FakeFn:
        if name not in self._fns:
            self._fns[name] = FakeFn(self, name, self._default_impl(name))
        return self._fns[name]

    def define(self, name: str, impl: Callable):
        self._fn(name).impl = impl

    def called(self, name: str) -> list[tuple]:
        return [args for fn, args in self.calls if fn == name]

    def new_handle(self) -> int:
        self._next_handle += 0x10
        return self._next_handle

    def make_array(self, shape: tuple[int, ...], values: list) -> int:
        handle = self.new_handle()
        self.arrays[handle] = (tuple(shape), list(values))
        return handle

    def _string(self, text: str) -> int:
        buf = ctypes.create_string_buffer(text.encode())
        self._keep.append(buf)
        return ctypes.addressof(buf)

    def _default_impl(self, name: str) -> Callable:
        p = self.prefix
        match = self._array_re.match(name)
        if match:
            return getattr(self, f'_array_{match.group(1)}')
        if name in (f'{p}_context_config_new', f'{p}_context_new'):
            return lambda *args: self.new_handle()
        if name == f'{p}_context_get_error':
            return lambda ctx: self._string(self.error_message) if self.error_message else None
        if name == f'{p}_context_report':
            return lambda ctx: self._string('report')
        return lambda *args: 0

    def _array_new(self, ctx, data, *dims):
        n = 1
        for dim in dims:
            n *= dim
        return self.make_array(dims, data[:n])

    def _array_free(self, ctx, handle):
        del self.arrays[handle]
        return 0

    def _array_values(self, ctx, handle, out):
        _, values = self.arrays[handle]
        for i, value in enumerate(values):
            out[i] = value
        return 0

    def _array_shape(self, ctx, handle):
        shape, _ = self.arrays[handle]
        result = (ctypes.c_int64 * len(shape))(*shape)
        self._keep.append(result)
        return result


@pytest.fixture
def fake_lib() -> Callable[..., FakeLib]:
    def _fake_lib(prefix: str = 'futhark') -> FakeLib:
        return FakeLib(prefix)

    return _fake_lib


@pytest.fixture
def load_bindings(generate, fake_lib) -> Callable[..., tuple[types.ModuleType, FakeLib]]:
    """Generate Python bindings, execute them and bind them to a fake library"""
    def _load_bindings(data: dict, prefix: str = 'futhark') -> tuple[types.ModuleType, FakeLib]:
        source = generate('python', data, prefix)['.py']
        module = types.ModuleType('generated_bindings')
        exec(compile(source, 'generated_bindings.py', 'exec'), module.__dict__)
        lib = fake_lib(prefix)
        module.load(lib)
        return module, lib

    return _load_bindings
