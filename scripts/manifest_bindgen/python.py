"""
Python backend

Generates a ctypes module (.py) with wrapper classes that release their
native handles through weakref.finalize, plus a type stub (.pyi).
"""

from typing import TYPE_CHECKING
import keyword

from .backend import Backend
from .codegen import CodeGen, as_pascal_case
from .manifest import Knob
from .types import Kind, ResolvedType, TypeResolver

if TYPE_CHECKING:
    from .array import ArrayInfo
    from .codegen import Fragments
    from .entry import EntryInfo
    from .foreign import ForeignFn
    from .manifest import Manifest
    from .opaque import OpaqueInfo

PY_TYPES = {
    'i8': 'int',
    'i16': 'int',
    'i32': 'int',
    'i64': 'int',
    'u8': 'int',
    'u16': 'int',
    'u32': 'int',
    'u64': 'int',
    'f32': 'float',
    'f64': 'float',
}

PY_CTYPES = {
    'i8': 'ctypes.c_int8',
    'i16': 'ctypes.c_int16',
    'i32': 'ctypes.c_int32',
    'i64': 'ctypes.c_int64',
    'u8': 'ctypes.c_uint8',
    'u16': 'ctypes.c_uint16',
    'u32': 'ctypes.c_uint32',
    'u64': 'ctypes.c_uint64',
    'f32': 'ctypes.c_float',
    'f64': 'ctypes.c_double',
}

# array module typecodes
PY_TYPECODES = {
    'i8': 'b',
    'i16': 'h',
    'i32': 'i',
    'i64': 'q',
    'u8': 'B',
    'u16': 'H',
    'u32': 'I',
    'u64': 'Q',
    'f32': 'f',
    'f64': 'd',
}

# Module level names of the generated module
PY_RESERVED = {
    'array', 'ctypes', 'os', 'weakref', 'load', 'Context',
    'Error', 'CodeError', 'NullPtrError', 'InvalidShapeError', 'UseAfterFreeError',
}

PY_ERRORS = '''\
class Error(Exception):
    """Base class of errors raised by the bindings"""


class CodeError(Error):
    """A native call returned a nonzero status"""

    def __init__(self, code, message=None):
        self.code = code
        self.message = message
        text = 'native call failed with status %d' % code
        if message:
            text += ': ' + message
        super().__init__(text)


class NullPtrError(Error):
    """A native constructor returned a null handle"""


class InvalidShapeError(Error):
    """A buffer length does not match the product of the dimensions"""

    def __init__(self, expected, actual):
        self.expected = expected
        self.actual = actual
        super().__init__('expected %d elements, got %d' % (expected, actual))


class UseAfterFreeError(Error):
    """A context or value was used after it was released"""'''

PY_HELPERS = '''\
class _Foreign:
    """Native functions, bound by load()"""

    def __getattr__(self, name):
        raise Error('native library is not loaded, call load() first')


_ffi = _Foreign()


def _declare(lib, name, argtypes, restype):
    fn = getattr(lib, name)
    fn.argtypes = argtypes
    fn.restype = restype
    setattr(_ffi, name, fn)


def _product(dims):
    n = 1
    for dim in dims:
        n *= dim
    return n


def _consume(slot):
    """Take the handle out of an output slot, leaving the slot empty"""
    ptr = slot.value
    slot.value = None
    if not ptr:
        raise NullPtrError('native call produced a null handle')
    return ptr


def _take_string(ptr):
    """Copy and release a string allocated by the native library"""
    if not ptr:
        return None
    try:
        return ctypes.string_at(ptr).decode('utf-8', 'replace')
    finally:
        _ffi.free(ptr)


def _free_handle(free_fn, ctx_finalizer, ctx_handle, ptr):
    # Values outliving their context were released with it
    if ctx_finalizer.alive:
        free_fn(ctx_handle, ptr)'''

PY_STUB_PRELUDE = '''\
import ctypes
import os
from typing import MutableSequence, NoReturn, Optional, Sequence, Union


class Error(Exception): ...


class CodeError(Error):
    code: int
    message: Optional[str]
    def __init__(self, code: int, message: Optional[str] = ...) -> None: ...


class NullPtrError(Error): ...


class InvalidShapeError(Error):
    expected: int
    actual: int
    def __init__(self, expected: int, actual: int) -> None: ...


class UseAfterFreeError(Error): ...


def load(lib: Union[str, bytes, os.PathLike, ctypes.CDLL]) -> ctypes.CDLL: ...'''


def py_ident(name: str) -> str:
    """Avoid keywords and the generated module's own names"""
    if keyword.iskeyword(name) or name in PY_RESERVED:
        return name + '_'
    return name


class PythonBackend(Backend):
    """ctypes bindings with finalizer-managed wrappers"""

    name = 'python'
    suffixes = ('.py', '.pyi')
    formatter = None

    context_t = 'ctypes.c_void_p'
    config_t = 'ctypes.c_void_p'
    int_t = 'ctypes.c_int'
    int64_t = 'ctypes.c_int64'
    byte_t = 'ctypes.c_uint8'
    void_t = 'None'
    string_t = 'ctypes.c_char_p'
    # Kept as a raw address so it can be released after copying
    cstring_t = 'ctypes.c_void_p'

    def ptr(self, type_str: str) -> str:
        return f'ctypes.POINTER({type_str})'

    def make_resolver(self) -> TypeResolver:
        return TypeResolver(PY_TYPES, PY_CTYPES, PY_TYPECODES)

    def array_type(self, name: str, elemtype: str, rank: int) -> ResolvedType:
        cls = f'Array{elemtype.upper()}D{rank}'
        return ResolvedType(
            kind=Kind.ARRAY,
            source=name,
            name=cls,
            ctype='ctypes.c_void_p',
            module=cls,
            elemtype=elemtype,
            rank=rank,
        )

    def opaque_type(self, name: str, ident: str) -> ResolvedType:
        cls = py_ident(as_pascal_case(ident))
        return ResolvedType(
            kind=Kind.OPAQUE,
            source=name,
            name=cls,
            ctype='ctypes.c_void_p',
            module=cls,
        )

    def declare(self, fn: 'ForeignFn') -> str:
        argtypes = ', '.join(fn.arg_types)
        return f"_declare(lib, '{fn.name}', [{argtypes}], {fn.ret or 'None'})"

    # Marshalling helpers

    @staticmethod
    def _slot(resolved: ResolvedType) -> str:
        if resolved.is_handle:
            return 'ctypes.c_void_p()'
        return f'{resolved.ctype}()'

    @staticmethod
    def _convert(resolved: ResolvedType, ctx: str, slot: str) -> str:
        if resolved.is_handle:
            return f'{resolved.module}._from_raw({ctx}, {slot})'
        return f'{slot}.value'

    @staticmethod
    def _native_arg(resolved: ResolvedType, name: str) -> str:
        if resolved.is_handle:
            return f'{name}.ptr'
        return name

    # Wrappers

    def _gen_handle_methods(self, gen: CodeGen, cls: str):
        """ptr, free and context manager support shared by every wrapper"""
        gen.line('@property')
        with gen.block('def ptr(self):', None):
            gen.line('"""Raw native handle"""')
            with gen.block('if not self._finalizer.alive:', None):
                gen.line(f"raise UseAfterFreeError('{cls} used after free')")
            gen.line('return self._ptr')
        gen.line()
        with gen.block('def free(self):', None):
            gen.line('"""Release the native value; calling it again has no effect"""')
            gen.line('self._finalizer()')
        gen.line()
        with gen.block('def __enter__(self):', None):
            gen.line('return self')
        gen.line()
        with gen.block('def __exit__(self, *exc):', None):
            gen.line('self.free()')

    def _gen_release(self, gen: CodeGen, free_fn: str):
        gen.line('@classmethod')
        with gen.block('def _release(cls, ctx, slot):', None):
            gen.line('"""Free a handle left in an output slot that was never adopted"""')
            with gen.block('if slot.value:', None):
                gen.line(f'_ffi.{free_fn}(ctx.handle, slot.value)')
                gen.line('slot.value = None')

    def gen_array(self, info: 'ArrayInfo', frags: 'Fragments'):
        cls = info.resolved.name
        ctype = info.elem_ctype
        rank = info.rank

        gen = CodeGen()
        with gen.block(f'class {cls}:', None):
            gen.line(f'"""Native {info.elemtype} array of rank {rank}"""')
            gen.line()
            gen.line(f'rank = {rank}')
            gen.line(f"typecode = '{info.elem_tag}'")
            gen.line()
            with gen.block('def __init__(self, ctx, dims, data=None):', None):
                gen.line('dims = tuple(int(dim) for dim in dims)')
                with gen.block(f'if len(dims) != {rank}:', None):
                    gen.line(f"raise ValueError('expected {rank} dimensions, got %d' % len(dims))")
                gen.line('n = _product(dims)')
                with gen.block('if data is None:', None):
                    gen.line(f'buf = ({ctype} * n)()')
                with gen.block('else:', None):
                    with gen.block('if len(data) != n:', None):
                        gen.line('raise InvalidShapeError(n, len(data))')
                    gen.line(f'buf = ({ctype} * n).from_buffer_copy(array.array(self.typecode, data))')
                gen.line(f'ptr = _ffi.{info.new_fn}(ctx.handle, buf, *dims)')
                with gen.block('if not ptr:', None):
                    gen.line(f"raise NullPtrError('{info.new_fn} returned a null handle')")
                gen.line('self._adopt(ctx, ptr, dims)')
            gen.line()
            gen.line('@classmethod')
            with gen.block('def _from_raw(cls, ctx, slot):', None):
                gen.line('"""Adopt the handle held by an output slot, clearing the slot"""')
                gen.line('ptr = _consume(slot)')
                gen.line(f'shape = _ffi.{info.shape_fn}(ctx.handle, ptr)')
                gen.line('obj = cls.__new__(cls)')
                gen.line(f'obj._adopt(ctx, ptr, tuple(int(shape[i]) for i in range({rank})))')
                gen.line('return obj')
            gen.line()
            self._gen_release(gen, info.free_fn)
            gen.line()
            with gen.block('def _adopt(self, ctx, ptr, shape):', None):
                gen.line('self._ctx = ctx')
                gen.line('self._ptr = ptr')
                gen.line('self.shape = shape')
                gen.line('self._finalizer = weakref.finalize(')
                gen.line(f'    self, _free_handle, _ffi.{info.free_fn}, ctx._finalizer, ctx.handle, ptr)')
            gen.line()
            with gen.block('def __repr__(self):', None):
                gen.line(f"return '<{cls} shape=%r>' % (self.shape,)")
            gen.line()
            self._gen_handle_methods(gen, cls)
            gen.line()
            with gen.block('def values(self, out=None):', None):
                gen.line('"""Copy the elements out in row-major order, into out if given"""')
                gen.line('n = _product(self.shape)')
                with gen.block('if out is not None and len(out) != n:', None):
                    gen.line('raise InvalidShapeError(n, len(out))')
                gen.line(f'buf = ({ctype} * n)()')
                gen.line(f'self._ctx._check(_ffi.{info.values_fn}(self._ctx.handle, self.ptr, buf))')
                gen.line('self._ctx.sync()')
                with gen.block('if out is None:', None):
                    gen.line('return list(buf)')
                with gen.block('for i, value in enumerate(buf):', None):
                    gen.line('out[i] = value')
                gen.line('return out')
        frags.definitions.append(gen.output())

        elem = info.elem_type
        stub = CodeGen()
        with stub.block(f'class {cls}:', None):
            stub.lines(
                'rank: int',
                'typecode: str',
                'shape: tuple[int, ...]',
                f'def __init__(self, ctx: Context, dims: Sequence[int], '
                f'data: Optional[Sequence[{elem}]] = ...) -> None: ...',
                '@property',
                'def ptr(self) -> int: ...',
                'def free(self) -> None: ...',
                f'def __enter__(self) -> {cls}: ...',
                'def __exit__(self, *exc: object) -> None: ...',
                f'def values(self, out: Optional[MutableSequence[{elem}]] = ...) -> list[{elem}]: ...',
            )
        frags.interface.append(stub.output())

    def gen_opaque(self, info: 'OpaqueInfo', frags: 'Fragments'):
        cls = info.resolved.name
        record = info.record

        gen = CodeGen()
        with gen.block(f'class {cls}:', None):
            gen.line(f'"""Native opaque value {info.resolved.source!r}"""')
            gen.line()
            if record is None:
                with gen.block('def __init__(self, *args, **kwargs):', None):
                    gen.line(f"raise TypeError('{cls} values can only be produced by entry points')")
            else:
                params = ''.join(f', {f.param}' for f in record.fields)
                args = ''.join(f', {self._native_arg(f.resolved, f.param)}' for f in record.fields)
                with gen.block(f'def __init__(self, ctx{params}):', None):
                    gen.line('slot = ctypes.c_void_p()')
                    gen.line(f'ctx._check(_ffi.{record.new_fn}(ctx.handle, ctypes.pointer(slot){args}))')
                    gen.line('self._adopt(ctx, _consume(slot))')
            gen.line()
            gen.line('@classmethod')
            with gen.block('def _from_raw(cls, ctx, slot):', None):
                gen.line('"""Adopt the handle held by an output slot, clearing the slot"""')
                gen.line('obj = cls.__new__(cls)')
                gen.line('obj._adopt(ctx, _consume(slot))')
                gen.line('return obj')
            gen.line()
            self._gen_release(gen, info.free_fn)
            gen.line()
            with gen.block('def _adopt(self, ctx, ptr):', None):
                gen.line('self._ctx = ctx')
                gen.line('self._ptr = ptr')
                gen.line('self._finalizer = weakref.finalize(')
                gen.line(f'    self, _free_handle, _ffi.{info.free_fn}, ctx._finalizer, ctx.handle, ptr)')
            gen.line()
            self._gen_handle_methods(gen, cls)
            if record is not None:
                for field in record.fields:
                    gen.line()
                    with gen.block(f'def {field.accessor}(self):', None):
                        gen.line(f'"""Field {field.name}"""')
                        gen.line(f'out = {self._slot(field.resolved)}')
                        gen.line(f'self._ctx._check(_ffi.{field.project_fn}'
                                 f'(self._ctx.handle, ctypes.pointer(out), self.ptr))')
                        gen.line(f'return {self._convert(field.resolved, "self._ctx", "out")}')
        frags.definitions.append(gen.output())

        stub = CodeGen()
        with stub.block(f'class {cls}:', None):
            if record is None:
                stub.line('def __init__(self, *args: object, **kwargs: object) -> NoReturn: ...')
            else:
                params = ''.join(f', {f.param}: {f.resolved.name}' for f in record.fields)
                stub.line(f'def __init__(self, ctx: Context{params}) -> None: ...')
            stub.lines(
                '@property',
                'def ptr(self) -> int: ...',
                'def free(self) -> None: ...',
                f'def __enter__(self) -> {cls}: ...',
                'def __exit__(self, *exc: object) -> None: ...',
            )
            if record is not None:
                for field in record.fields:
                    stub.line(f'def {field.accessor}(self) -> {field.resolved.name}: ...')
        frags.interface.append(stub.output())

    def gen_entry(self, info: 'EntryInfo', frags: 'Fragments'):
        name = py_ident(info.ident)
        params = ''.join(f', {p.name}' for p in info.inputs)
        args = ['ctx.handle']
        args += [f'ctypes.pointer({p.name})' for p in info.outputs]
        args += [self._native_arg(p.resolved, p.name) for p in info.inputs]

        gen = CodeGen()
        with gen.block(f'def {name}(ctx{params}):', None):
            gen.line(f'"""Entry point {info.name}"""')
            for p in info.outputs:
                gen.line(f'{p.name} = {self._slot(p.resolved)}')
            gen.line(f'ctx._check(_ffi.{info.cfun}({", ".join(args)}))')
            results = [self._convert(p.resolved, 'ctx', p.name) for p in info.outputs]
            handles = [p for p in info.outputs if p.resolved.is_handle]
            if len(results) == 1:
                gen.line(f'return {results[0]}')
            elif len(handles) > 1:
                # A failed adoption must not leak the handles after it
                with gen.block('try:', None):
                    gen.line(f'return ({", ".join(results)})')
                with gen.block('finally:', None):
                    for p in handles:
                        gen.line(f'{p.resolved.module}._release(ctx, {p.name})')
            elif results:
                gen.line(f'return ({", ".join(results)})')
        frags.entries.append(gen.output())

        typed = ''.join(f', {p.name}: {p.resolved.name}' for p in info.inputs)
        outs = [p.resolved.name for p in info.outputs]
        if not outs:
            ret = 'None'
        elif info.returns_tuple:
            ret = f'tuple[{", ".join(outs)}]'
        else:
            ret = outs[0]
        frags.entry_signatures.append(f'def {name}(ctx: Context{typed}) -> {ret}: ...')

    # Artifacts

    def _gen_load(self, frags: 'Fragments') -> str:
        gen = CodeGen()
        with gen.block('def load(lib):', None):
            gen.line('"""Bind the native library')
            gen.line()
            gen.line('lib is a path to the shared library or an already loaded library.')
            gen.line('"""')
            with gen.block('if isinstance(lib, (str, bytes, os.PathLike)):', None):
                gen.line('lib = ctypes.CDLL(os.fspath(lib))')
            gen.lines(*frags.decls)
            gen.line('return lib')
        return gen.output()

    def _gen_context(self, knob: Knob) -> str:
        sym = self.symbol
        knob_param = ''
        if knob is Knob.NUM_THREADS:
            knob_param = ', num_threads=0'
        elif knob is Knob.DEVICE:
            knob_param = ', device=None'

        gen = CodeGen()
        with gen.block('def _free_context(config, handle):', None):
            gen.line(f'_ffi.{sym("context_free")}(handle)')
            gen.line(f'_ffi.{sym("context_config_free")}(config)')
        gen.line()
        gen.line()
        with gen.block('class Context:', None):
            gen.line('"""Native library context')
            gen.line()
            gen.line('Values created in a context keep it alive and are released before it.')
            gen.line('"""')
            gen.line()
            with gen.block('def __init__(self, *, debugging=False, profiling=False, logging=False, '
                           f'cache_file=None{knob_param}):', None):
                gen.line(f'config = _ffi.{sym("context_config_new")}()')
                with gen.block('if not config:', None):
                    gen.line("raise NullPtrError('cannot create context configuration')")
                for flag in ('debugging', 'profiling', 'logging'):
                    gen.line(f'_ffi.{sym(f"context_config_set_{flag}")}(config, int({flag}))')
                gen.line('self._cache_file = None')
                with gen.block('if cache_file is not None:', None):
                    gen.line('self._cache_file = os.fsencode(cache_file)')
                    gen.line(f'_ffi.{sym("context_config_set_cache_file")}(config, self._cache_file)')
                if knob is Knob.NUM_THREADS:
                    gen.line(f'_ffi.{sym("context_config_set_num_threads")}(config, num_threads)')
                elif knob is Knob.DEVICE:
                    gen.line('self._device = None')
                    with gen.block('if device is not None:', None):
                        gen.line('self._device = device.encode()')
                        gen.line(f'_ffi.{sym("context_config_set_device")}(config, self._device)')
                gen.line(f'handle = _ffi.{sym("context_new")}(config)')
                with gen.block('if not handle:', None):
                    gen.line(f'_ffi.{sym("context_config_free")}(config)')
                    gen.line("raise NullPtrError('cannot create context')")
                gen.line('self._handle = handle')
                gen.line('self._finalizer = weakref.finalize(self, _free_context, config, handle)')
            gen.line()
            gen.line('@property')
            with gen.block('def handle(self):', None):
                gen.line('"""Raw context pointer"""')
                with gen.block('if not self._finalizer.alive:', None):
                    gen.line("raise UseAfterFreeError('context used after free')")
                gen.line('return self._handle')
            gen.line()
            with gen.block('def free(self):', None):
                gen.line('"""Release the context; calling it again has no effect"""')
                gen.line('self._finalizer()')
            gen.line()
            with gen.block('def __enter__(self):', None):
                gen.line('return self')
            gen.line()
            with gen.block('def __exit__(self, *exc):', None):
                gen.line('self.free()')
            gen.line()
            with gen.block('def _check(self, rc):', None):
                with gen.block('if rc != 0:', None):
                    gen.line('raise CodeError(rc, self.get_error())')
            gen.line()
            with gen.block('def sync(self):', None):
                gen.line('"""Wait for pending native work"""')
                gen.line(f'self._check(_ffi.{sym("context_sync")}(self.handle))')
            gen.line()
            with gen.block('def clear_caches(self):', None):
                gen.line(f'self._check(_ffi.{sym("context_clear_caches")}(self.handle))')
            gen.line()
            with gen.block('def pause_profiling(self):', None):
                gen.line(f'_ffi.{sym("context_pause_profiling")}(self.handle)')
            gen.line()
            with gen.block('def unpause_profiling(self):', None):
                gen.line(f'_ffi.{sym("context_unpause_profiling")}(self.handle)')
            gen.line()
            with gen.block('def get_error(self):', None):
                gen.line('"""Pending error message, or None"""')
                gen.line(f'return _take_string(_ffi.{sym("context_get_error")}(self.handle))')
            gen.line()
            with gen.block('def report(self):', None):
                gen.line('"""Debugging and profiling report, or None"""')
                gen.line(f'return _take_string(_ffi.{sym("context_report")}(self.handle))')
        return gen.output()

    def _gen_context_stub(self, knob: Knob) -> str:
        knob_param = ''
        if knob is Knob.NUM_THREADS:
            knob_param = ', num_threads: int = ...'
        elif knob is Knob.DEVICE:
            knob_param = ', device: Optional[str] = ...'

        gen = CodeGen()
        with gen.block('class Context:', None):
            gen.lines(
                'def __init__(self, *, debugging: bool = ..., profiling: bool = ..., logging: bool = ..., '
                f'cache_file: Optional[Union[str, bytes, os.PathLike]] = ...{knob_param}) -> None: ...',
                '@property',
                'def handle(self) -> int: ...',
                'def free(self) -> None: ...',
                'def __enter__(self) -> Context: ...',
                'def __exit__(self, *exc: object) -> None: ...',
                'def sync(self) -> None: ...',
                'def clear_caches(self) -> None: ...',
                'def pause_profiling(self) -> None: ...',
                'def unpause_profiling(self) -> None: ...',
                'def get_error(self) -> Optional[str]: ...',
                'def report(self) -> Optional[str]: ...',
            )
        return gen.output()

    def assemble(self, manifest: 'Manifest', frags: 'Fragments') -> dict[str, str]:
        header = f'# {self.header_comment(manifest)}'

        module = [
            header + '\n\nimport array\nimport ctypes\nimport os\nimport weakref',
            PY_ERRORS,
            PY_HELPERS,
            self._gen_load(frags),
            self._gen_context(manifest.knob),
        ]
        module += frags.definitions
        module += frags.entries

        stub = [
            header + '\n\n' + PY_STUB_PRELUDE,
            self._gen_context_stub(manifest.knob),
        ]
        stub += frags.interface
        stub += frags.entry_signatures

        return {
            '.py': '\n\n\n'.join(module) + '\n',
            '.pyi': '\n\n\n'.join(stub) + '\n',
        }
