import pytest

from manifest_bindgen import (
    ArrayType, Kind, ManifestError, OpaqueType, Record, ResolvedType, TypeClass, TypeResolver, classify,
)
from manifest_bindgen.codegen import as_ident, as_pascal_case


def test_classify() -> None:
    record = Record(new_fn='new', fields=())

    assert classify(ArrayType('f32', 1)) is TypeClass.ARRAY
    assert classify(OpaqueType('free')) is TypeClass.OPAQUE
    assert classify(OpaqueType('free', record)) is TypeClass.RECORD


def test_lookup_falls_back_to_the_key() -> None:
    resolver = TypeResolver({'f32': 'float'}, {'f32': 'c_float'}, {'f32': 'f'})

    assert resolver.get_type('f32') == 'float'
    assert resolver.get_ctype('f32') == 'c_float'
    assert resolver.get_elem_tag('f32') == 'f'
    assert resolver.get_type('unknown') == 'unknown'
    assert resolver.get_ctype('unknown') == 'unknown'
    assert resolver.get_elem_tag('unknown') == 'unknown'


def test_resolves_scalars_through_tables() -> None:
    resolver = TypeResolver({'i64': 'int'}, {'i64': 'c_int64'})

    resolved = resolver.resolve('i64')

    assert resolved.kind is Kind.SCALAR
    assert resolved.name == 'int'
    assert resolved.ctype == 'c_int64'
    assert not resolved.is_handle


def test_registered_type_visible_to_later_lookups() -> None:
    resolver = TypeResolver({}, {})
    arr = ResolvedType(kind=Kind.ARRAY, source='[]f32', name='ArrayF32D1', ctype='c_void_p',
                       module='ArrayF32D1', elemtype='f32', rank=1)

    with pytest.raises(ManifestError):
        resolver.resolve('[]f32')
    resolver.register('[]f32', arr)

    assert resolver.resolve('[]f32') is arr
    assert resolver.get_type('[]f32') == 'ArrayF32D1'
    assert resolver.get_ctype('[]f32') == 'c_void_p'
    assert arr.is_handle


def test_register_twice_raises() -> None:
    resolver = TypeResolver({}, {})
    opaque = ResolvedType(kind=Kind.OPAQUE, source='t', name='T', ctype='c_void_p', module='T')
    resolver.register('t', opaque)

    with pytest.raises(ManifestError, match='registered twice'):
        resolver.register('t', opaque)


def test_unresolved_reference_raises() -> None:
    resolver = TypeResolver({}, {})

    with pytest.raises(ManifestError, match="'state'"):
        resolver.resolve('state')


@pytest.mark.parametrize(
    ('name', 'ident', 'pascal'),
    [
        ('pair', 'pair', 'Pair'),
        ('(f32, f32)', 'f32_f32', 'F32F32'),
        ('my-record', 'my_record', 'MyRecord'),
        ('0', 't_0', 'T0'),
        ('[]i32', 'i32', 'I32'),
    ],
)
def test_identifier_helpers(name: str, ident: str, pascal: str) -> None:
    assert as_ident(name) == ident
    assert as_pascal_case(name) == pascal
