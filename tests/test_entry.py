import pytest

from manifest_bindgen import (
    ArrayGenerator, ArrayType, Entry, EntryArg, EntryGenerator, Fragments, ManifestError,
    OCamlBackend, OpaqueGenerator, OpaqueType, PythonBackend, RustBackend,
)


def _entry(cfun: str, inputs: list[str], outputs: list[str]) -> Entry:
    return Entry(
        cfun=cfun,
        inputs=tuple(EntryArg(t, f'in{i}') for i, t in enumerate(inputs)),
        outputs=tuple(EntryArg(t) for t in outputs),
    )


@pytest.fixture
def expand():
    """Register one f32 array and one opaque type, then expand entries"""
    def _expand(backend, *entries: tuple[str, Entry]):
        resolver = backend.make_resolver()
        frags = Fragments()
        ArrayGenerator(backend, resolver).generate('[]f32', ArrayType('f32', 1), frags)
        OpaqueGenerator(backend, resolver).generate('state', OpaqueType('futhark_free_opaque_state'), frags)
        generator = EntryGenerator(backend, resolver)
        infos = [generator.generate(name, entry, frags) for name, entry in entries]
        return infos, frags

    return _expand


@pytest.mark.parametrize('backend', [OCamlBackend(), RustBackend(), PythonBackend()])
def test_declaration_layout(expand, backend) -> None:
    (info,), frags = expand(backend, ('step', _entry('futhark_entry_step', ['state', 'i64'], ['state', 'f32'])))

    fn = frags.find('futhark_entry_step')
    assert [label for label, _ in fn.args] == ['ctx', 'out0', 'out1', 'input0', 'input1']
    assert fn.ret == backend.int_t
    assert fn.args[2][1] == backend.ptr(info.outputs[1].resolved.ctype)
    assert info.returns_tuple


def test_rust_inputs_are_const_handles(expand) -> None:
    _, frags = expand(RustBackend(), ('main', _entry('futhark_entry_main', ['[]f32'], ['[]f32'])))

    assert RustBackend().declare(frags.find('futhark_entry_main')) == (
        '#[allow(unused)]\n'
        'extern "C" {\n'
        '    fn futhark_entry_main(ctx: *mut futhark_context, out0: *mut *mut futhark_f32_1d, '
        'input0: *const futhark_f32_1d) -> std::os::raw::c_int;\n'
        '}'
    )


@pytest.mark.parametrize(
    ('outputs', 'ret'),
    [
        ([], 'None'),
        (['f32'], 'float'),
        (['[]f32'], 'ArrayF32D1'),
        (['f32', '[]f32'], 'tuple[float, ArrayF32D1]'),
    ],
)
def test_python_return_arity(expand, outputs: list[str], ret: str) -> None:
    (info,), frags = expand(PythonBackend(), ('run', _entry('futhark_entry_run', ['[]f32'], outputs)))

    assert info.returns_tuple == (len(outputs) > 1)
    assert frags.entry_signatures == [f'def run(ctx: Context, input0: ArrayF32D1) -> {ret}: ...']


@pytest.mark.parametrize(
    ('outputs', 'ret'),
    [
        ([], 'unit'),
        (['f32'], 'float'),
        (['state', 'f32'], 'State.t * float'),
    ],
)
def test_ocaml_return_arity(expand, outputs: list[str], ret: str) -> None:
    _, frags = expand(OCamlBackend(), ('run', _entry('futhark_entry_run', ['state'], outputs)))

    assert frags.entry_signatures == [f'val run : Context.t -> State.t -> {ret}']


@pytest.mark.parametrize(
    ('outputs', 'ret'),
    [
        ([], '()'),
        (['f32'], 'f32'),
        (['[]f32', 'f32'], "(ArrayF32D1<'a>, f32)"),
    ],
)
def test_rust_return_arity(expand, outputs: list[str], ret: str) -> None:
    _, frags = expand(RustBackend(), ('run', _entry('futhark_entry_run', ['[]f32'], outputs)))

    assert f"pub fn run<'a>(&'a self, input0: &ArrayF32D1<'a>) -> Result<{ret}, Error> {{" in frags.entries[0]


def test_python_entry_call(expand) -> None:
    _, frags = expand(PythonBackend(), ('main', _entry('futhark_entry_main', ['[]f32', 'i64'], ['state'])))

    code = frags.entries[0]
    assert 'def main(ctx, input0, input1):' in code
    assert 'out0 = ctypes.c_void_p()' in code
    assert 'ctx._check(_ffi.futhark_entry_main(ctx.handle, ctypes.pointer(out0), input0.ptr, input1))' in code
    assert 'return State._from_raw(ctx, out0)' in code


@pytest.mark.parametrize(
    ('backend', 'name', 'expected'),
    [
        (PythonBackend(), 'class', 'def class_(ctx'),
        (PythonBackend(), 'load', 'def load_(ctx'),
        (OCamlBackend(), 'type', 'let type_ ctx'),
        (RustBackend(), 'sync', "pub fn sync_<'a>"),
        (RustBackend(), 'match', "pub fn match_<'a>"),
    ],
)
def test_entry_names_avoid_reserved_words(expand, backend, name: str, expected: str) -> None:
    _, frags = expand(backend, (name, _entry(f'futhark_entry_{name}', [], ['f32'])))

    assert expected in frags.entries[0]


def test_unknown_input_type_raises(expand) -> None:
    with pytest.raises(ManifestError, match="'\\[\\]f64'"):
        expand(PythonBackend(), ('main', _entry('futhark_entry_main', ['[]f64'], [])))


def test_colliding_entry_identifiers_raise(expand) -> None:
    with pytest.raises(ManifestError, match='same identifier'):
        expand(
            PythonBackend(),
            ('do-it', _entry('futhark_entry_a', [], [])),
            ('do_it', _entry('futhark_entry_b', [], [])),
        )


def test_shared_native_symbol_raises(expand) -> None:
    with pytest.raises(ManifestError, match="'futhark_entry_run' is declared twice"):
        expand(
            RustBackend(),
            ('run', _entry('futhark_entry_run', [], [])),
            ('rerun', _entry('futhark_entry_run', [], [])),
        )
