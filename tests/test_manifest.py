import json

import pytest

from manifest_bindgen import ArrayType, Knob, Manifest, ManifestError, NativeBackend, OpaqueType


def test_loads_types_in_declaration_order(sample_data: dict) -> None:
    manifest = Manifest.from_dict(sample_data)

    assert list(manifest.types) == ['[]f32', '[][]i64', 'state', 'pair']
    assert manifest.types['[][]i64'] == ArrayType(elemtype='i64', rank=2)
    assert manifest.types['state'] == OpaqueType(free_fn='futhark_free_opaque_state')
    assert manifest.version == '0.25.2'


def test_record_fields_keep_manifest_order(sample_data: dict) -> None:
    record = Manifest.from_dict(sample_data).types['pair'].record

    assert record.new_fn == 'futhark_new_opaque_pair'
    assert [f.name for f in record.fields] == ['0', '1']
    assert [f.type_ref for f in record.fields] == ['f32', '[]f32']
    assert record.fields[1].project_fn == 'futhark_project_opaque_pair_1'


def test_entry_points(sample_data: dict) -> None:
    entries = Manifest.from_dict(sample_data).entry_points

    assert list(entries) == ['main', 'sum_pair', 'reset']
    assert entries['main'].cfun == 'futhark_entry_main'
    assert [a.type_ref for a in entries['sum_pair'].outputs] == ['f32', '[]f32']
    assert entries['main'].inputs[0].name == 'xs'
    assert entries['reset'].inputs == ()
    assert entries['reset'].outputs == ()


@pytest.mark.parametrize(
    ('selector', 'knob'),
    [
        ('c', Knob.NONE),
        ('multicore', Knob.NUM_THREADS),
        ('ispc', Knob.NUM_THREADS),
        ('opencl', Knob.DEVICE),
        ('cuda', Knob.DEVICE),
        ('hip', Knob.DEVICE),
        ('python', Knob.NONE),
        ('pyopencl', Knob.NONE),
        ('CUDA', Knob.DEVICE),
    ],
)
def test_backend_selects_knob(make_manifest_data, selector: str, knob: Knob) -> None:
    manifest = Manifest.from_dict(make_manifest_data(backend=selector))

    assert manifest.knob is knob


def test_unknown_backend_has_no_knob(make_manifest_data) -> None:
    manifest = Manifest.from_dict(make_manifest_data(backend='fpga'))

    assert manifest.backend is None
    assert manifest.backend_name == 'fpga'
    assert manifest.knob is Knob.NONE


def test_missing_backend_defaults_to_c() -> None:
    manifest = Manifest.from_dict({'types': {}, 'entry_points': {}})

    assert manifest.backend is NativeBackend.C


def test_rank_zero_is_valid(make_manifest_data, array_decl) -> None:
    manifest = Manifest.from_dict(make_manifest_data(types={'f32': array_decl('f32', 0)}))

    assert manifest.types['f32'].rank == 0


@pytest.mark.parametrize(
    ('decl', 'message'),
    [
        ({'kind': 'array', 'elemtype': 'f16', 'rank': 1}, 'unsupported element type'),
        ({'kind': 'array', 'elemtype': 'f32', 'rank': -1}, 'negative rank'),
        ({'kind': 'array', 'elemtype': 'f32', 'rank': True}, "key 'rank' has invalid value"),
        ({'kind': 'array', 'elemtype': 'f32'}, "missing required key 'rank'"),
        ({'kind': 'sum'}, 'unknown kind'),
        ({'kind': 'opaque'}, "missing required key 'ops'"),
        ({'kind': 'opaque', 'ops': {}}, "missing required key 'free'"),
        ('array', 'must be an object'),
    ],
)
def test_malformed_type_raises(make_manifest_data, decl, message: str) -> None:
    with pytest.raises(ManifestError, match=message):
        Manifest.from_dict(make_manifest_data(types={'t': decl}))


def test_malformed_record_field_raises(make_manifest_data) -> None:
    decl = {
        'kind': 'opaque',
        'ops': {'free': 'futhark_free_opaque_t'},
        'record': {'new': 'futhark_new_opaque_t', 'fields': [{'name': 'a', 'type': 'f32'}]},
    }

    with pytest.raises(ManifestError, match="field 0 is missing required key 'project'"):
        Manifest.from_dict(make_manifest_data(types={'t': decl}))


def test_entry_without_cfun_raises(make_manifest_data) -> None:
    with pytest.raises(ManifestError, match="entry point 'main' is missing required key 'cfun'"):
        Manifest.from_dict(make_manifest_data(entry_points={'main': {'inputs': []}}))


def test_top_level_must_be_object() -> None:
    with pytest.raises(ManifestError, match='JSON object'):
        Manifest.from_dict([])


def test_load_from_file(tmp_path, sample_data: dict) -> None:
    path = tmp_path / 'lib.json'
    path.write_text(json.dumps(sample_data), encoding='utf-8')

    manifest = Manifest.load(str(path))

    assert list(manifest.entry_points) == ['main', 'sum_pair', 'reset']


def test_load_invalid_json(tmp_path) -> None:
    path = tmp_path / 'lib.json'
    path.write_text('{"types": ', encoding='utf-8')

    with pytest.raises(ManifestError, match='invalid JSON'):
        Manifest.load(str(path))


def test_load_missing_file(tmp_path) -> None:
    with pytest.raises(ManifestError, match='cannot read manifest'):
        Manifest.load(str(tmp_path / 'missing.json'))
