"""
Rust backend

Generates a single module (.rs) of extern "C" declarations and safe
wrappers: lifetimes tie every value to its Context, Drop releases it and
fallible calls return Result<T, Error>.
"""

from typing import TYPE_CHECKING

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

# Element kinds are spelled the same way in Rust
RUST_TYPES: dict[str, str] = {}

RUST_KEYWORDS = {
    'as', 'async', 'await', 'box', 'break', 'const', 'continue', 'crate', 'dyn',
    'else', 'enum', 'extern', 'false', 'fn', 'for', 'if', 'impl', 'in', 'let',
    'loop', 'match', 'mod', 'move', 'mut', 'pub', 'ref', 'return', 'self',
    'static', 'struct', 'super', 'trait', 'true', 'type', 'unsafe', 'use',
    'where', 'while', 'yield',
}

# Context methods generated unconditionally
RUST_CONTEXT_METHODS = {
    'new', 'new_with_options', 'sync', 'clear_caches', 'pause_profiling',
    'unpause_profiling', 'get_error', 'report',
}

RUST_RESERVED_TYPES = {'Context', 'Options', 'Error'}

C_INT = 'std::os::raw::c_int'

RUST_ERROR = '''\
#[derive(Debug, Clone, PartialEq, Eq)]
pub enum Error {
    Code(std::os::raw::c_int),
    NullPtr,
    InvalidShape(i64, i64),
}

impl std::fmt::Display for Error {
    fn fmt(&self, f: &mut std::fmt::Formatter<'_>) -> std::fmt::Result {
        match self {
            Error::Code(rc) => write!(f, "native call failed with status {}", rc),
            Error::NullPtr => write!(f, "native call returned a null pointer"),
            Error::InvalidShape(expected, actual) => {
                write!(f, "invalid shape: expected {}, got {}", expected, actual)
            }
        }
    }
}

impl std::error::Error for Error {}'''


def rust_ident(name: str, reserved=frozenset()) -> str:
    """Avoid keywords and names already taken in the same scope"""
    if name in RUST_KEYWORDS or name in reserved:
        return name + '_'
    return name


class RustBackend(Backend):
    """extern "C" bindings with Drop-managed wrapper structs"""

    name = 'rust'
    suffixes = ('.rs',)
    formatter = ['rustfmt']

    int_t = C_INT
    int64_t = 'i64'
    byte_t = 'u8'
    void_t = ''
    string_t = '*const std::os::raw::c_char'
    cstring_t = '*mut std::os::raw::c_char'

    def __init__(self, prefix: str = 'futhark'):
        super().__init__(prefix)
        self.context_struct = self.symbol('context')
        self.config_struct = self.symbol('context_config')
        self.context_t = f'*mut {self.context_struct}'
        self.config_t = f'*mut {self.config_struct}'

    def ptr(self, type_str: str) -> str:
        return f'*mut {type_str}'

    def const_ptr(self, type_str: str) -> str:
        return f'*const {type_str}'

    def input_ctype(self, resolved: ResolvedType) -> str:
        if resolved.ctype.startswith('*mut '):
            return '*const ' + resolved.ctype[len('*mut '):]
        return resolved.ctype

    def make_resolver(self) -> TypeResolver:
        return TypeResolver(RUST_TYPES, RUST_TYPES)

    def array_type(self, name: str, elemtype: str, rank: int) -> ResolvedType:
        wrapper = f'Array{elemtype.upper()}D{rank}'
        return ResolvedType(
            kind=Kind.ARRAY,
            source=name,
            name=f"{wrapper}<'a>",
            ctype=f'*mut {self.symbol(f"{elemtype}_{rank}d")}',
            module=wrapper,
            elemtype=elemtype,
            rank=rank,
        )

    def opaque_type(self, name: str, ident: str) -> ResolvedType:
        wrapper = rust_ident(as_pascal_case(ident), RUST_RESERVED_TYPES)
        return ResolvedType(
            kind=Kind.OPAQUE,
            source=name,
            name=f"{wrapper}<'a>",
            ctype=f'*mut {self.symbol(f"opaque_{ident}")}',
            module=wrapper,
        )

    @staticmethod
    def _handle_struct(struct: str) -> str:
        gen = CodeGen()
        gen.line('#[repr(C)]')
        gen.line('#[allow(non_camel_case_types)]')
        with gen.block(f'pub struct {struct} {{'):
            gen.line('_private: [u8; 0],')
        return gen.output()

    def handle_decl(self, resolved: ResolvedType) -> str:
        return self._handle_struct(resolved.ctype[len('*mut '):])

    def declare(self, fn: 'ForeignFn') -> str:
        args = ', '.join(f'{label}: {t}' for label, t in fn.args)
        ret = f' -> {fn.ret}' if fn.ret else ''
        gen = CodeGen()
        gen.line('#[allow(unused)]')
        with gen.block('extern "C" {'):
            gen.line(f'fn {fn.name}({args}){ret};')
        return gen.output()

    # Marshalling helpers

    @staticmethod
    def _slot_init(resolved: ResolvedType) -> str:
        if resolved.is_handle:
            return 'std::ptr::null_mut()'
        return f'{resolved.name}::default()'

    @staticmethod
    def _convert(resolved: ResolvedType, ctx: str, slot: str) -> str:
        if resolved.is_handle:
            return f'{resolved.module}::from_raw({ctx}, {slot})?'
        return slot

    @staticmethod
    def _native_arg(resolved: ResolvedType, name: str) -> str:
        if resolved.is_handle:
            return f'{name}.ptr'
        return name

    @staticmethod
    def _param_type(resolved: ResolvedType) -> str:
        if resolved.is_handle:
            return f'&{resolved.name}'
        return resolved.name

    @staticmethod
    def _check_rc(gen: CodeGen):
        gen.line('if rc != 0 {')
        gen.line('    return Err(Error::Code(rc));')
        gen.line('}')

    # Wrappers

    def _gen_drop(self, gen: CodeGen, wrapper: str, free_fn: str):
        with gen.block(f"impl<'a> Drop for {wrapper}<'a> {{"):
            with gen.block('fn drop(&mut self) {'):
                gen.line(f'unsafe {{ {free_fn}(self.ctx.context, self.ptr) }};')

    def gen_array(self, info: 'ArrayInfo', frags: 'Fragments'):
        wrapper = info.resolved.module
        handle = info.resolved.ctype
        elem = info.elem_type
        rank = info.rank
        dims = ''.join(f', dims[{i}]' for i in range(rank))

        gen = CodeGen()
        gen.line(f'/// {info.elemtype} array of rank {rank}')
        with gen.block(f"pub struct {wrapper}<'a> {{"):
            gen.line(f'ptr: {handle},')
            gen.line(f'shape: [i64; {rank}],')
            gen.line("ctx: &'a Context,")
        gen.line()
        with gen.block(f"impl<'a> {wrapper}<'a> {{"):
            gen.line('/// Create a zero-filled array')
            with gen.block(f"pub fn new(ctx: &'a Context, dims: [i64; {rank}]) -> Result<Self, Error> {{"):
                gen.line(f'let data = vec![0 as {elem}; dims.iter().product::<i64>() as usize];')
                gen.line('Self::from_slice(ctx, dims, &data)')
            gen.line()
            gen.line('/// Create an array from row-major data')
            with gen.block(f"pub fn from_slice(ctx: &'a Context, dims: [i64; {rank}], data: &[{elem}]) "
                           '-> Result<Self, Error> {'):
                gen.line('let n: i64 = dims.iter().product();')
                with gen.block('if data.len() as i64 != n {'):
                    gen.line('return Err(Error::InvalidShape(n, data.len() as i64));')
                gen.line(f'let ptr = unsafe {{ {info.new_fn}(ctx.context, data.as_ptr(){dims}) }};')
                with gen.block('if ptr.is_null() {'):
                    gen.line('return Err(Error::NullPtr);')
                gen.line(f'Ok({wrapper} {{ ptr, shape: dims, ctx }})')
            gen.line()
            with gen.block(f"pub(crate) fn from_raw(ctx: &'a Context, ptr: {handle}) -> Result<Self, Error> {{"):
                with gen.block('if ptr.is_null() {'):
                    gen.line('return Err(Error::NullPtr);')
                gen.line(f'let shape_ptr = unsafe {{ {info.shape_fn}(ctx.context, ptr) }};')
                gen.line(f'let mut shape = [0i64; {rank}];')
                with gen.block('for (i, dim) in shape.iter_mut().enumerate() {'):
                    gen.line('*dim = unsafe { *shape_ptr.add(i) };')
                gen.line(f'Ok({wrapper} {{ ptr, shape, ctx }})')
            gen.line()
            with gen.block(f'pub fn shape(&self) -> &[i64; {rank}] {{'):
                gen.line('&self.shape')
            gen.line()
            gen.line('/// Copy the elements into a slice of matching length')
            with gen.block(f'pub fn values(&self, data: &mut [{elem}]) -> Result<(), Error> {{'):
                gen.line('let n: i64 = self.shape.iter().product();')
                with gen.block('if data.len() as i64 != n {'):
                    gen.line('return Err(Error::InvalidShape(n, data.len() as i64));')
                gen.line(f'let rc = unsafe {{ {info.values_fn}(self.ctx.context, self.ptr, data.as_mut_ptr()) }};')
                self._check_rc(gen)
                gen.line('self.ctx.sync()')
            gen.line()
            gen.line('/// Copy the elements into a new vector')
            with gen.block(f'pub fn get(&self) -> Result<Vec<{elem}>, Error> {{'):
                gen.line(f'let mut data = vec![0 as {elem}; self.shape.iter().product::<i64>() as usize];')
                gen.line('self.values(&mut data)?;')
                gen.line('Ok(data)')
        gen.line()
        self._gen_drop(gen, wrapper, info.free_fn)
        frags.definitions.append(gen.output())

    def gen_opaque(self, info: 'OpaqueInfo', frags: 'Fragments'):
        wrapper = info.resolved.module
        handle = info.resolved.ctype
        record = info.record

        gen = CodeGen()
        gen.line(f'/// Opaque value {info.resolved.source}')
        with gen.block(f"pub struct {wrapper}<'a> {{"):
            gen.line(f'ptr: {handle},')
            gen.line("ctx: &'a Context,")
        gen.line()
        with gen.block(f"impl<'a> {wrapper}<'a> {{"):
            with gen.block(f"pub(crate) fn from_raw(ctx: &'a Context, ptr: {handle}) -> Result<Self, Error> {{"):
                with gen.block('if ptr.is_null() {'):
                    gen.line('return Err(Error::NullPtr);')
                gen.line(f'Ok({wrapper} {{ ptr, ctx }})')
            if record is not None:
                params = ''.join(f', {f.param}: {self._param_type(f.resolved)}' for f in record.fields)
                args = ''.join(f', {self._native_arg(f.resolved, f.param)}' for f in record.fields)
                gen.line()
                with gen.block(f"pub fn new(ctx: &'a Context{params}) -> Result<Self, Error> {{"):
                    gen.line('let mut out = std::ptr::null_mut();')
                    gen.line(f'let rc = unsafe {{ {record.new_fn}(ctx.context, &mut out{args}) }};')
                    self._check_rc(gen)
                    gen.line('Self::from_raw(ctx, out)')
                for field in record.fields:
                    gen.line()
                    gen.line(f'/// Field {field.name}')
                    with gen.block(f'pub fn {field.accessor}(&self) -> Result<{field.resolved.name}, Error> {{'):
                        gen.line(f'let mut out = {self._slot_init(field.resolved)};')
                        gen.line(f'let rc = unsafe {{ {field.project_fn}(self.ctx.context, &mut out, self.ptr) }};')
                        self._check_rc(gen)
                        gen.line(f'Ok({self._convert(field.resolved, "self.ctx", "out")})')
        gen.line()
        self._gen_drop(gen, wrapper, info.free_fn)
        frags.definitions.append(gen.output())

    def gen_entry(self, info: 'EntryInfo', frags: 'Fragments'):
        name = rust_ident(info.ident, RUST_CONTEXT_METHODS)
        params = ''.join(f', {p.name}: {self._param_type(p.resolved)}' for p in info.inputs)
        outs = [p.resolved.name for p in info.outputs]
        if not outs:
            ret = '()'
        elif info.returns_tuple:
            ret = f'({", ".join(outs)})'
        else:
            ret = outs[0]

        args = ['self.context']
        args += [f'&mut {p.name}' for p in info.outputs]
        args += [self._native_arg(p.resolved, p.name) for p in info.inputs]

        gen = CodeGen()
        gen.line(f'/// Entry point: {info.name}')
        with gen.block(f"pub fn {name}<'a>(&'a self{params}) -> Result<{ret}, Error> {{"):
            for p in info.outputs:
                gen.line(f'let mut {p.name} = {self._slot_init(p.resolved)};')
            gen.line(f'let rc = unsafe {{ {info.cfun}({", ".join(args)}) }};')
            self._check_rc(gen)
            results = [self._convert(p.resolved, 'self', p.name) for p in info.outputs]
            handles = [p for p in info.outputs if p.resolved.is_handle]
            if len(handles) > 1:
                # Adopt every handle before the first error returns, so Drop releases the rest
                for p in handles:
                    gen.line(f'let {p.name} = {p.resolved.module}::from_raw(self, {p.name});')
                results = [f'{p.name}?' if p.resolved.is_handle else p.name for p in info.outputs]
            if len(results) == 1:
                gen.line(f'Ok({results[0]})')
            else:
                gen.line(f'Ok(({", ".join(results)}))')
        frags.entries.append(gen.output())

    # Artifacts

    def _gen_options(self, knob: Knob) -> str:
        gen = CodeGen()
        gen.line('/// Context configuration')
        gen.line('#[derive(Debug, Default, Clone)]')
        with gen.block('pub struct Options {'):
            gen.lines(
                'debug: bool,',
                'profile: bool,',
                'logging: bool,',
                'cache_file: Option<std::ffi::CString>,',
            )
            if knob is Knob.NUM_THREADS:
                gen.line('num_threads: u32,')
            elif knob is Knob.DEVICE:
                gen.line('device: Option<std::ffi::CString>,')
        gen.line()
        with gen.block('impl Options {'):
            with gen.block('pub fn new() -> Self {'):
                gen.line('Options::default()')
            for method, attr in (('debug', 'debug'), ('profile', 'profile'), ('log', 'logging')):
                gen.line()
                with gen.block(f'pub fn {method}(mut self) -> Self {{'):
                    gen.line(f'self.{attr} = true;')
                    gen.line('self')
            gen.line()
            with gen.block('pub fn cache_file(mut self, path: impl AsRef<str>) -> Self {'):
                gen.line('self.cache_file = Some(std::ffi::CString::new(path.as_ref()).expect("invalid cache file"));')
                gen.line('self')
            if knob is Knob.NUM_THREADS:
                gen.line()
                with gen.block('pub fn num_threads(mut self, n: u32) -> Self {'):
                    gen.line('self.num_threads = n;')
                    gen.line('self')
            elif knob is Knob.DEVICE:
                gen.line()
                with gen.block('pub fn device(mut self, device: impl AsRef<str>) -> Self {'):
                    gen.line('self.device = Some(std::ffi::CString::new(device.as_ref()).expect("invalid device"));')
                    gen.line('self')
        return gen.output()

    def _gen_context(self, knob: Knob) -> str:
        sym = self.symbol
        gen = CodeGen()
        gen.line(f'/// Wrapper around {self.context_struct}')
        with gen.block('pub struct Context {'):
            gen.line(f'config: {self.config_t},')
            gen.line(f'context: {self.context_t},')
            gen.line('_cache_file: Option<std::ffi::CString>,')
        gen.line()
        with gen.block('impl Context {'):
            gen.line('/// Create a context with default options')
            with gen.block('pub fn new() -> Result<Self, Error> {'):
                gen.line('Self::new_with_options(Options::default())')
            gen.line()
            gen.line('/// Create a context with options')
            with gen.block('pub fn new_with_options(options: Options) -> Result<Self, Error> {'):
                gen.line(f'let config = unsafe {{ {sym("context_config_new")}() }};')
                with gen.block('if config.is_null() {'):
                    gen.line('return Err(Error::NullPtr);')
                with gen.block('unsafe {'):
                    gen.line(f'{sym("context_config_set_debugging")}(config, options.debug as {C_INT});')
                    gen.line(f'{sym("context_config_set_profiling")}(config, options.profile as {C_INT});')
                    gen.line(f'{sym("context_config_set_logging")}(config, options.logging as {C_INT});')
                    with gen.block('if let Some(path) = &options.cache_file {'):
                        gen.line(f'{sym("context_config_set_cache_file")}(config, path.as_ptr());')
                    if knob is Knob.NUM_THREADS:
                        gen.line(f'{sym("context_config_set_num_threads")}(config, options.num_threads as {C_INT});')
                    elif knob is Knob.DEVICE:
                        with gen.block('if let Some(device) = &options.device {'):
                            gen.line(f'{sym("context_config_set_device")}(config, device.as_ptr());')
                gen.line(f'let context = unsafe {{ {sym("context_new")}(config) }};')
                with gen.block('if context.is_null() {'):
                    gen.line(f'unsafe {{ {sym("context_config_free")}(config) }};')
                    gen.line('return Err(Error::NullPtr);')
                gen.line('Ok(Context { config, context, _cache_file: options.cache_file })')
            for method in ('sync', 'clear_caches'):
                gen.line()
                with gen.block(f'pub fn {method}(&self) -> Result<(), Error> {{'):
                    gen.line(f'let rc = unsafe {{ {sym(f"context_{method}")}(self.context) }};')
                    self._check_rc(gen)
                    gen.line('Ok(())')
            for method in ('pause_profiling', 'unpause_profiling'):
                gen.line()
                with gen.block(f'pub fn {method}(&self) {{'):
                    gen.line(f'unsafe {{ {sym(f"context_{method}")}(self.context) }};')
            gen.line()
            gen.line('/// Get the pending error message')
            with gen.block('pub fn get_error(&self) -> Option<String> {'):
                gen.line(f'take_string(unsafe {{ {sym("context_get_error")}(self.context) }})')
            gen.line()
            gen.line('/// Get a report with debugging and profiling information')
            with gen.block('pub fn report(&self) -> Option<String> {'):
                gen.line(f'take_string(unsafe {{ {sym("context_report")}(self.context) }})')
        gen.line()
        with gen.block('impl Drop for Context {'):
            with gen.block('fn drop(&mut self) {'):
                with gen.block('unsafe {'):
                    gen.line(f'{sym("context_sync")}(self.context);')
                    gen.line(f'{sym("context_free")}(self.context);')
                    gen.line(f'{sym("context_config_free")}(self.config);')
        gen.line()
        with gen.block(f'fn take_string(s: {self.cstring_t}) -> Option<String> {{'):
            with gen.block('if s.is_null() {'):
                gen.line('return None;')
            gen.line('let r = unsafe { std::ffi::CStr::from_ptr(s).to_string_lossy().into_owned() };')
            gen.line('unsafe { free(s) };')
            gen.line('Some(r)')
        return gen.output()

    def assemble(self, manifest: 'Manifest', frags: 'Fragments') -> dict[str, str]:
        parts = [
            f'// {self.header_comment(manifest)}',
            self._handle_struct(self.config_struct),
            self._handle_struct(self.context_struct),
        ]
        parts += frags.decls
        parts += [
            RUST_ERROR,
            self._gen_options(manifest.knob),
            self._gen_context(manifest.knob),
        ]
        parts += frags.definitions

        entries = CodeGen()
        with entries.block('impl Context {'):
            for i, entry in enumerate(frags.entries):
                if i:
                    entries.line()
                entries.raw(entry)
        parts.append(entries.output())

        return {'.rs': '\n\n'.join(parts) + '\n'}
