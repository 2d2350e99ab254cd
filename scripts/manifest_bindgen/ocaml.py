"""
OCaml backend

Generates ctypes-foreign bindings (.ml) and the matching interface (.mli).
Wrapper modules release native values through Gc.finalise and move array
data through Bigarray.
"""

from typing import TYPE_CHECKING

from .backend import Backend
from .codegen import CodeGen, first_uppercase
from .manifest import Knob
from .types import Kind, ResolvedType, TypeResolver

if TYPE_CHECKING:
    from .array import ArrayInfo
    from .codegen import Fragments
    from .entry import EntryInfo
    from .foreign import ForeignFn
    from .manifest import Manifest
    from .opaque import OpaqueInfo

OCAML_TYPES = {
    'i8': 'int',
    'u8': 'int',
    'i16': 'int',
    'u16': 'int',
    'i32': 'int32',
    'u32': 'int32',
    'i64': 'int64',
    'u64': 'int64',
    'f32': 'float',
    'f64': 'float',
}

# Unsigned 8/16-bit values go through int views and unsigned 32/64-bit
# values travel as their signed counterparts, so the foreign type agrees
# with the host and Bigarray element types
OCAML_CTYPES = {
    'i8': 'int8_t',
    'u8': 'uint8_int',
    'i16': 'int16_t',
    'u16': 'uint16_int',
    'i32': 'int32_t',
    'u32': 'int32_t',
    'i64': 'int64_t',
    'u64': 'int64_t',
    'f32': 'float',
    'f64': 'double',
}

OCAML_BA_TYPES = {
    'i8': 'Bigarray.int8_signed_elt',
    'u8': 'Bigarray.int8_unsigned_elt',
    'i16': 'Bigarray.int16_signed_elt',
    'u16': 'Bigarray.int16_unsigned_elt',
    'i32': 'Bigarray.int32_elt',
    'u32': 'Bigarray.int32_elt',
    'i64': 'Bigarray.int64_elt',
    'u64': 'Bigarray.int64_elt',
    'f32': 'Bigarray.float32_elt',
    'f64': 'Bigarray.float64_elt',
}

OCAML_ZEROS = {
    'int': '0',
    'int32': '0l',
    'int64': '0L',
    'float': '0.0',
}

OCAML_KEYWORDS = {
    'and', 'as', 'assert', 'begin', 'class', 'constraint', 'do', 'done',
    'downto', 'else', 'end', 'exception', 'external', 'false', 'for', 'fun',
    'function', 'functor', 'if', 'in', 'include', 'inherit', 'initializer',
    'lazy', 'let', 'match', 'method', 'module', 'mutable', 'new', 'nonrec',
    'object', 'of', 'open', 'or', 'private', 'rec', 'sig', 'struct', 'then',
    'to', 'true', 'try', 'type', 'val', 'virtual', 'when', 'while', 'with',
}

# Names bound by the generated prologue
OCAML_RESERVED_VALUES = {
    'context', 'context_config', 'free', 'ptr', 'void', 'char', 'string', 'int',
    'float', 'double', 'int8_t', 'uint8_t', 'int16_t', 'uint16_t', 'int32_t', 'int64_t',
    'uint8_int', 'uint16_int',
}
OCAML_RESERVED_MODULES = {'Bindings', 'Context', 'Entry'}

OCAML_ERRORS = '''\
type error =
  | InvalidShape of int * int
  | NullPtr
  | Code of int
  | UseAfterFree of [`context | `array | `opaque]

exception Error of error'''

OCAML_ERROR_HELPERS = '''\
let check_use_after_free t b = if b then raise (Error (UseAfterFree t))

let check_rc rc = if rc <> 0 then raise (Error (Code rc))

let () =
  Printexc.register_printer (function
    | Error (InvalidShape (expected, actual)) ->
      Some (Printf.sprintf "invalid shape: expected %d, got %d" expected actual)
    | Error NullPtr -> Some "native call returned a null pointer"
    | Error (Code rc) -> Some (Printf.sprintf "native call failed with status %d" rc)
    | Error (UseAfterFree `context) -> Some "context used after free"
    | Error (UseAfterFree `array) -> Some "array used after free"
    | Error (UseAfterFree `opaque) -> Some "opaque value used after free"
    | _ -> None)'''


def ml_ident(name: str) -> str:
    """Lowercase OCaml value name, avoiding keywords and prologue names"""
    if name in OCAML_KEYWORDS or name in OCAML_RESERVED_VALUES:
        return name + '_'
    return name


def ml_module(ident: str) -> str:
    """Capitalized OCaml module name for an identifier"""
    name = first_uppercase(ident)
    if name in OCAML_RESERVED_MODULES:
        return name + '_'
    return name


class OCamlBackend(Backend):
    """ctypes-foreign bindings with Gc-managed wrapper modules"""

    name = 'ocaml'
    suffixes = ('.ml', '.mli')
    formatter = ['ocamlformat', '--enable-outside-detected-project', '-i']

    context_t = 'context'
    config_t = 'context_config'
    int_t = 'int'
    int64_t = 'int64_t'
    byte_t = 'uint8_t'
    void_t = 'void'
    string_t = 'ptr char'
    cstring_t = 'ptr char'

    def ptr(self, type_str: str) -> str:
        if ' ' in type_str:
            return f'ptr ({type_str})'
        return f'ptr {type_str}'

    def make_resolver(self) -> TypeResolver:
        return TypeResolver(OCAML_TYPES, OCAML_CTYPES, OCAML_BA_TYPES)

    def array_type(self, name: str, elemtype: str, rank: int) -> ResolvedType:
        ctype = f'array_{elemtype}_{rank}d'
        module = first_uppercase(ctype)
        return ResolvedType(
            kind=Kind.ARRAY,
            source=name,
            name=f'{module}.t',
            ctype=ctype,
            module=module,
            elemtype=elemtype,
            rank=rank,
        )

    def opaque_type(self, name: str, ident: str) -> ResolvedType:
        module = ml_module(ident)
        return ResolvedType(
            kind=Kind.OPAQUE,
            source=name,
            name=f'{module}.t',
            ctype=ml_ident(ident),
            module=module,
        )

    def handle_decl(self, resolved: ResolvedType) -> str:
        return f'let {resolved.ctype} = typedef (ptr void) "{resolved.ctype}"'

    def declare(self, fn: 'ForeignFn') -> str:
        args = fn.arg_types or ['void']
        return f'let {fn.name} = Foreign.foreign "{fn.name}" ({" @-> ".join(args)} @-> returning ({fn.ret}))'

    # Marshalling helpers

    @staticmethod
    def _slot_type(resolved: ResolvedType) -> str:
        if resolved.is_handle:
            return '(ptr void)'
        return resolved.ctype

    @staticmethod
    def _convert(resolved: ResolvedType, ctx: str, slot: str) -> str:
        if resolved.is_handle:
            return f'({resolved.module}.of_raw {ctx} !@{slot})'
        return f'!@{slot}'

    @staticmethod
    def _native_arg(resolved: ResolvedType, name: str) -> str:
        if resolved.is_handle:
            return f'({resolved.module}.get_ptr {name})'
        return name

    # Wrappers

    def gen_array(self, info: 'ArrayInfo', frags: 'Fragments'):
        module = info.resolved.module
        elem = info.elem_type
        ba_kind = info.elem_tag[:-len('_elt')]
        genarray = f'({elem}, {info.elem_tag}, Bigarray.c_layout) Bigarray.Genarray.t'
        rank = info.rank
        dim_args = ''.join(f' (Int64.of_int dims.({i}))' for i in range(rank))

        gen = CodeGen('  ')
        with gen.block(f'module {module} = struct', 'end'):
            gen.line('type t = { ptr : unit ptr; ctx : Context.t; shape : int array; mutable array_free : bool }')
            gen.line()
            with gen.block('let free t =', None):
                with gen.block('if not t.array_free && not t.ctx.Context.context_free then begin', 'end'):
                    gen.line(f'ignore ({info.free_fn} t.ctx.Context.handle t.ptr);')
                    gen.line('t.array_free <- true')
            gen.line()
            with gen.block('let of_raw ctx p =', None):
                gen.line('if is_null p then raise (Error NullPtr);')
                gen.line(f'let shape_ptr = {info.shape_fn} ctx.Context.handle p in')
                gen.line(f'let shape = Array.init {rank} (fun i -> Int64.to_int !@(shape_ptr +@ i)) in')
                gen.line('let t = { ptr = p; ctx; shape; array_free = false } in')
                gen.line('Gc.finalise free t;')
                gen.line('t')
            gen.line()
            with gen.block('let get_ptr t =', None):
                gen.line('check_use_after_free `array t.array_free;')
                gen.line('t.ptr')
            gen.line()
            with gen.block('let v ctx ba =', None):
                gen.line('check_use_after_free `context ctx.Context.context_free;')
                gen.line('let dims = Bigarray.Genarray.dims ba in')
                gen.line(f'if Array.length dims <> {rank} then '
                         f'raise (Error (InvalidShape ({rank}, Array.length dims)));')
                gen.line(f'let p = {info.new_fn} ctx.Context.handle (bigarray_start genarray ba){dim_args} in')
                gen.line('of_raw ctx p')
            gen.line()
            with gen.block('let create ctx dims =', None):
                gen.line(f'let ba = Bigarray.Genarray.create {ba_kind} Bigarray.c_layout dims in')
                gen.line(f'Bigarray.Genarray.fill ba {OCAML_ZEROS.get(elem, "0")};')
                gen.line('v ctx ba')
            gen.line()
            with gen.block('let of_array ctx dims arr =', None):
                gen.line('let n = Array.fold_left ( * ) 1 dims in')
                gen.line('if Array.length arr <> n then raise (Error (InvalidShape (n, Array.length arr)));')
                gen.line(f'let flat = Bigarray.Array1.of_array {ba_kind} Bigarray.c_layout arr in')
                gen.line('v ctx (Bigarray.reshape (Bigarray.genarray_of_array1 flat) dims)')
            gen.line()
            with gen.block('let values t ba =', None):
                gen.line('check_use_after_free `context t.ctx.Context.context_free;')
                gen.line('let expected = Array.fold_left ( * ) 1 t.shape in')
                gen.line('let n = Array.fold_left ( * ) 1 (Bigarray.Genarray.dims ba) in')
                gen.line('if n <> expected then raise (Error (InvalidShape (expected, n)));')
                gen.line(f'let rc = {info.values_fn} t.ctx.Context.handle (get_ptr t) (bigarray_start genarray ba) in')
                gen.line('check_rc rc;')
                gen.line('Context.auto_sync t.ctx')
            gen.line()
            with gen.block('let get t =', None):
                gen.line(f'let ba = Bigarray.Genarray.create {ba_kind} Bigarray.c_layout t.shape in')
                gen.line('values t ba;')
                gen.line('ba')
            gen.line()
            gen.line('let shape t = Array.copy t.shape')
        frags.definitions.append(gen.output())

        sig = CodeGen('  ')
        with sig.block(f'module {module} : sig', 'end'):
            sig.lines(
                'type t',
                f'val v : Context.t -> {genarray} -> t',
                'val create : Context.t -> int array -> t',
                f'val of_array : Context.t -> int array -> {elem} array -> t',
                f'val values : t -> {genarray} -> unit',
                f'val get : t -> {genarray}',
                'val shape : t -> int array',
                'val free : t -> unit',
            )
        frags.interface.append(sig.output())

    def gen_opaque(self, info: 'OpaqueInfo', frags: 'Fragments'):
        module = info.resolved.module
        record = info.record

        gen = CodeGen('  ')
        with gen.block(f'module {module} = struct', 'end'):
            gen.line('type t = { ptr : unit ptr; ctx : Context.t; mutable opaque_free : bool }')
            gen.line()
            with gen.block('let free t =', None):
                with gen.block('if not t.opaque_free && not t.ctx.Context.context_free then begin', 'end'):
                    gen.line(f'ignore ({info.free_fn} t.ctx.Context.handle t.ptr);')
                    gen.line('t.opaque_free <- true')
            gen.line()
            with gen.block('let of_raw ctx p =', None):
                gen.line('if is_null p then raise (Error NullPtr);')
                gen.line('let t = { ptr = p; ctx; opaque_free = false } in')
                gen.line('Gc.finalise free t;')
                gen.line('t')
            gen.line()
            with gen.block('let get_ptr t =', None):
                gen.line('check_use_after_free `opaque t.opaque_free;')
                gen.line('t.ptr')
            if record is not None:
                params = ''.join(f' {f.param}' for f in record.fields)
                args = ''.join(f' {self._native_arg(f.resolved, f.param)}' for f in record.fields)
                gen.line()
                with gen.block(f'let v ctx{params} =', None):
                    gen.line('check_use_after_free `context ctx.Context.context_free;')
                    gen.line('let out = allocate_n (ptr void) ~count:1 in')
                    gen.line(f'check_rc ({record.new_fn} ctx.Context.handle out{args});')
                    gen.line('of_raw ctx !@out')
                for field in record.fields:
                    gen.line()
                    with gen.block(f'let {field.accessor} t =', None):
                        gen.line('check_use_after_free `context t.ctx.Context.context_free;')
                        gen.line(f'let out = allocate_n {self._slot_type(field.resolved)} ~count:1 in')
                        gen.line(f'check_rc ({field.project_fn} t.ctx.Context.handle out (get_ptr t));')
                        gen.line(self._convert(field.resolved, 't.ctx', 'out'))
        frags.definitions.append(gen.output())

        sig = CodeGen('  ')
        with sig.block(f'module {module} : sig', 'end'):
            sig.line('type t')
            sig.line('val free : t -> unit')
            if record is not None:
                arg_types = ''.join(f'{f.resolved.name} -> ' for f in record.fields)
                sig.line(f'val v : Context.t -> {arg_types}t')
                for field in record.fields:
                    sig.line(f'val {field.accessor} : t -> {field.resolved.name}')
        frags.interface.append(sig.output())

    def gen_entry(self, info: 'EntryInfo', frags: 'Fragments'):
        name = ml_ident(info.ident)
        params = ''.join(f' {p.name}' for p in info.inputs)
        args = [f'{p.name}_ptr' for p in info.outputs]
        args += [self._native_arg(p.resolved, p.name) for p in info.inputs]
        call_args = ''.join(f' {a}' for a in args)

        gen = CodeGen('  ')
        with gen.block(f'let {name} ctx{params} =', None):
            gen.line('check_use_after_free `context ctx.Context.context_free;')
            for p in info.outputs:
                gen.line(f'let {p.name}_ptr = allocate_n {self._slot_type(p.resolved)} ~count:1 in')
            gen.line(f'check_rc ({info.cfun} ctx.Context.handle{call_args});')
            results = [self._convert(p.resolved, 'ctx', f'{p.name}_ptr') for p in info.outputs]
            if results:
                gen.line(f'({", ".join(results)})')
            else:
                gen.line('()')
        frags.entries.append(gen.output())

        arg_types = ''.join(f'{p.resolved.name} -> ' for p in info.inputs)
        ret = ' * '.join(p.resolved.name for p in info.outputs) or 'unit'
        frags.entry_signatures.append(f'val {name} : Context.t -> {arg_types}{ret}')

    # Artifacts

    def _gen_context(self, knob: Knob) -> str:
        sym = self.symbol
        extra_param = ''
        if knob is Knob.NUM_THREADS:
            extra_param = ' ?(num_threads = 0)'
        elif knob is Knob.DEVICE:
            extra_param = ' ?device'

        # The configuration keeps pointers to its strings until the context is freed
        strings = ['cache_file']
        if knob is Knob.DEVICE:
            strings.append('device')

        gen = CodeGen('  ')
        with gen.block('module Context = struct', 'end'):
            gen.line('type t = {')
            gen.line('  handle : unit ptr;')
            gen.line('  config : unit ptr;')
            gen.line('  strings : char CArray.t list;')
            gen.line('  auto_sync : bool;')
            gen.line('  mutable context_free : bool;')
            gen.line('}')
            gen.line()
            with gen.block('let c_string s =', None):
                gen.line("let arr = CArray.make char ~initial:'\\000' (String.length s + 1) in")
                gen.line('String.iteri (CArray.set arr) s;')
                gen.line('arr')
            gen.line()
            with gen.block('let free t =', None):
                with gen.block('if not t.context_free then begin', 'end'):
                    gen.line(f'ignore ({sym("context_sync")} t.handle);')
                    gen.line(f'{sym("context_free")} t.handle;')
                    gen.line(f'{sym("context_config_free")} t.config;')
                    gen.line('ignore (Sys.opaque_identity t.strings);')
                    gen.line('t.context_free <- true')
            gen.line()
            with gen.block('let v ?(debug = false) ?(log = false) ?(profile = false) ?cache_file '
                           f'?(auto_sync = true){extra_param} () =', None):
                gen.line(f'let config = {sym("context_config_new")} () in')
                gen.line('if is_null config then raise (Error NullPtr);')
                gen.line(f'{sym("context_config_set_debugging")} config (if debug then 1 else 0);')
                gen.line(f'{sym("context_config_set_profiling")} config (if profile then 1 else 0);')
                gen.line(f'{sym("context_config_set_logging")} config (if log then 1 else 0);')
                if knob is Knob.NUM_THREADS:
                    gen.line(f'{sym("context_config_set_num_threads")} config num_threads;')
                for name in strings:
                    gen.line(f'let {name} = Option.map c_string {name} in')
                    gen.line(f'Option.iter (fun s -> {sym(f"context_config_set_{name}")} config (CArray.start s)) '
                             f'{name};')
                gen.line(f'let handle = {sym("context_new")} config in')
                with gen.block('if is_null handle then begin', 'end;'):
                    gen.line(f'{sym("context_config_free")} config;')
                    gen.line('raise (Error NullPtr)')
                gen.line('let strings = Option.to_list cache_file in')
                if knob is Knob.DEVICE:
                    gen.line('let strings = Option.to_list device @ strings in')
                gen.line('let t = { handle; config; strings; auto_sync; context_free = false } in')
                gen.line('Gc.finalise free t;')
                gen.line('t')
            gen.line()
            with gen.block('let sync t =', None):
                gen.line('check_use_after_free `context t.context_free;')
                gen.line(f'check_rc ({sym("context_sync")} t.handle)')
            gen.line()
            gen.line('let auto_sync t = if t.auto_sync then sync t')
            gen.line()
            with gen.block('let clear_caches t =', None):
                gen.line('check_use_after_free `context t.context_free;')
                gen.line(f'check_rc ({sym("context_clear_caches")} t.handle)')
            gen.line()
            with gen.block('let take_string p =', None):
                gen.line('if is_null p then None')
                with gen.block('else begin', 'end'):
                    gen.line('let s = coerce (ptr char) string p in')
                    gen.line('Bindings.free p;')
                    gen.line('Some s')
            gen.line()
            for fn in ('get_error', 'report'):
                with gen.block(f'let {fn} t =', None):
                    gen.line('check_use_after_free `context t.context_free;')
                    gen.line(f'take_string ({sym(f"context_{fn}")} t.handle)')
                gen.line()
            for fn in ('pause_profiling', 'unpause_profiling'):
                with gen.block(f'let {fn} t =', None):
                    gen.line('check_use_after_free `context t.context_free;')
                    gen.line(f'{sym(f"context_{fn}")} t.handle')
                if fn == 'pause_profiling':
                    gen.line()
        return gen.output()

    def _gen_context_sig(self, knob: Knob) -> str:
        extra = ''
        if knob is Knob.NUM_THREADS:
            extra = '?num_threads:int -> '
        elif knob is Knob.DEVICE:
            extra = '?device:string -> '

        sig = CodeGen('  ')
        with sig.block('module Context : sig', 'end'):
            sig.lines(
                'type t',
                'val v : ?debug:bool -> ?log:bool -> ?profile:bool -> ?cache_file:string -> '
                f'?auto_sync:bool -> {extra}unit -> t',
                'val sync : t -> unit',
                'val free : t -> unit',
                'val clear_caches : t -> unit',
                'val get_error : t -> string option',
                'val report : t -> string option',
                'val pause_profiling : t -> unit',
                'val unpause_profiling : t -> unit',
            )
        return sig.output()

    def _gen_bindings(self, frags: 'Fragments') -> str:
        gen = CodeGen('  ')
        with gen.block('module Bindings = struct', 'end'):
            gen.line(f'let {self.context_t} = typedef (ptr void) "{self.context_t}"')
            gen.line(f'let {self.config_t} = typedef (ptr void) "{self.config_t}"')
            gen.line('let uint8_int = view ~read:Unsigned.UInt8.to_int ~write:Unsigned.UInt8.of_int uint8_t')
            gen.line('let uint16_int = view ~read:Unsigned.UInt16.to_int ~write:Unsigned.UInt16.of_int uint16_t')
            gen.lines(*frags.decls)
        return gen.output()

    def _gen_entries(self, frags: 'Fragments') -> str:
        gen = CodeGen('  ')
        with gen.block('module Entry = struct', 'end'):
            for i, entry in enumerate(frags.entries):
                if i:
                    gen.line()
                gen.raw(entry)
        return gen.output()

    def assemble(self, manifest: 'Manifest', frags: 'Fragments') -> dict[str, str]:
        header = f'(* {self.header_comment(manifest)} *)'

        ml = [
            header + '\n\nopen Ctypes',
            self._gen_bindings(frags),
            'open Bindings',
            OCAML_ERRORS,
            OCAML_ERROR_HELPERS,
            self._gen_context(manifest.knob),
        ]
        ml += frags.definitions
        ml.append(self._gen_entries(frags))

        entry_sig = CodeGen('  ')
        with entry_sig.block('module Entry : sig', 'end'):
            entry_sig.lines(*frags.entry_signatures)

        mli = [
            header,
            OCAML_ERRORS,
            self._gen_context_sig(manifest.knob),
        ]
        mli += frags.interface
        mli.append(entry_sig.output())

        return {
            '.ml': '\n\n'.join(ml) + '\n',
            '.mli': '\n\n'.join(mli) + '\n',
        }
