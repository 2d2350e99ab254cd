import pytest

from manifest_bindgen import ForeignFn, Fragments, Knob, OCamlBackend, PythonBackend, RustBackend
from manifest_bindgen.context import context_declarations


def test_builder_keeps_argument_order() -> None:
    fn = ForeignFn('futhark_x').arg('ctx', 'context').arg('n', 'int64_t').returns('int')

    assert fn.args == [('ctx', 'context'), ('n', 'int64_t')]
    assert fn.arg_types == ['context', 'int64_t']
    assert fn.ret == 'int'


def test_ocaml_declaration() -> None:
    fn = ForeignFn('futhark_x').arg('ctx', 'context').arg('n', 'int64_t').returns('int')

    assert OCamlBackend().declare(fn) == \
        'let futhark_x = Foreign.foreign "futhark_x" (context @-> int64_t @-> returning (int))'


def test_ocaml_declaration_without_arguments() -> None:
    fn = ForeignFn('futhark_context_config_new').returns('context_config')

    assert OCamlBackend().declare(fn) == (
        'let futhark_context_config_new = Foreign.foreign "futhark_context_config_new" '
        '(void @-> returning (context_config))'
    )


def test_ocaml_nested_pointers_are_parenthesized() -> None:
    backend = OCamlBackend()

    assert backend.ptr('float') == 'ptr float'
    assert backend.ptr('ptr void') == 'ptr (ptr void)'


def test_rust_declaration() -> None:
    backend = RustBackend()
    fn = ForeignFn('futhark_x').arg('ctx', backend.context_t).arg('n', backend.int64_t).returns(backend.int_t)

    assert backend.declare(fn) == (
        '#[allow(unused)]\n'
        'extern "C" {\n'
        '    fn futhark_x(ctx: *mut futhark_context, n: i64) -> std::os::raw::c_int;\n'
        '}'
    )


def test_rust_void_declaration_has_no_return() -> None:
    backend = RustBackend()
    fn = ForeignFn('futhark_context_free').arg('ctx', backend.context_t).returns(backend.void_t)

    assert 'fn futhark_context_free(ctx: *mut futhark_context);' in backend.declare(fn)


def test_python_declaration() -> None:
    backend = PythonBackend()
    fn = ForeignFn('futhark_x').arg('ctx', backend.context_t).arg('n', backend.int64_t).returns(backend.int_t)

    assert backend.declare(fn) == \
        "_declare(lib, 'futhark_x', [ctypes.c_void_p, ctypes.c_int64], ctypes.c_int)"


def test_prefix_applies_to_library_symbols() -> None:
    backend = RustBackend('mylib')

    assert backend.symbol('context_new') == 'mylib_context_new'
    assert backend.context_t == '*mut mylib_context'


@pytest.mark.parametrize('backend_cls', [OCamlBackend, RustBackend, PythonBackend])
@pytest.mark.parametrize(
    ('knob', 'present', 'absent'),
    [
        (Knob.NONE, None, ('futhark_context_config_set_num_threads', 'futhark_context_config_set_device')),
        (Knob.NUM_THREADS, 'futhark_context_config_set_num_threads', ('futhark_context_config_set_device',)),
        (Knob.DEVICE, 'futhark_context_config_set_device', ('futhark_context_config_set_num_threads',)),
    ],
)
def test_context_declarations_follow_knob(backend_cls, knob: Knob, present, absent) -> None:
    names = [fn.name for fn in context_declarations(backend_cls(), knob)]

    assert names[0] == 'futhark_context_config_new'
    assert names[-1] == 'free'
    if present is not None:
        assert present in names
        assert names.index(present) < names.index('futhark_context_new')
    for name in absent:
        assert name not in names


def test_fragments_find() -> None:
    backend = PythonBackend()
    frags = Fragments()
    for fn in context_declarations(backend, Knob.NONE):
        backend.add_foreign(frags, fn)

    assert frags.find('futhark_context_sync').ret == 'ctypes.c_int'
    assert frags.find('futhark_entry_main') is None
    assert len(frags.decls) == len(frags.foreign)
