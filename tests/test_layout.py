"""Tests for the HotSpot layout simulator."""

import pytest

from strcompress.classdata import ClassData, FieldData
from strcompress.layout import (DATA_MODELS, MODELS_JDK15, MODELS_LILLIPUT, DataModel, HotSpotLayouter,
                               align)

X32, X64, COOPS, COOPS16 = DATA_MODELS
COMPACT, COMPACT_COOPS, COMPACT_COOPS16 = MODELS_LILLIPUT

STRING = ClassData('java.lang.String', (
    FieldData('java.lang.String', 'value', 'java.lang.Object'),
    FieldData('java.lang.String', 'hash', 'int'),
))


def sizes(cd):
    return [HotSpotLayouter(model).layout(cd).instance_size for model in DATA_MODELS]


def test_align():
    assert align(0, 8) == 0
    assert align(12, 8) == 16
    assert align(16, 8) == 16


def test_catalogue_order_and_parameters():
    assert [m.label for m in DATA_MODELS] == [
        '32-bit', '64-bit', '64-bit, compressed refs', '64-bit, compressed refs, 16-byte align']
    assert [m.header_size for m in DATA_MODELS] == [8, 16, 12, 12]
    assert [m.reference_size for m in DATA_MODELS] == [4, 8, 4, 4]
    assert [m.compressed_shift for m in DATA_MODELS] == [0, 0, 3, 4]
    assert all(m.compressed_base == 0 for m in DATA_MODELS)


def test_models_are_immutable():
    with pytest.raises(AttributeError):
        X64.address_size = 4


def test_empty_object():
    assert sizes(ClassData('java.lang.Object')) == [8, 16, 16, 16]


def test_string_layout():
    assert sizes(STRING) == [16, 32, 24, 32]

    layout = HotSpotLayouter(COOPS).layout(STRING)
    offsets = {fl.field.name: fl.offset for fl in layout.fields}
    # ints before references
    assert offsets == {'hash': 12, 'value': 16}


def test_string_with_extra_fields():
    with_bool = STRING.with_field(FieldData('java.lang.String', 'isCompressed', 'boolean'))
    with_ref = STRING.with_field(FieldData('java.lang.String', 'coder', 'java.lang.Object'))

    assert sizes(with_bool) == [24, 32, 24, 32]
    assert sizes(with_ref) == [24, 40, 24, 32]


def test_long_gap_filled_with_int():
    cd = ClassData('Pair', (FieldData('Pair', 'a', 'long'), FieldData('Pair', 'b', 'int')))
    layout = HotSpotLayouter(COOPS).layout(cd)

    offsets = {fl.field.name: fl.offset for fl in layout.fields}
    assert offsets == {'b': 12, 'a': 16}
    assert layout.instance_size == 24


def test_subclass_fields_follow_superclass():
    cd = ClassData('B', (FieldData('A', 'x', 'byte'), FieldData('B', 'y', 'int')))
    layout = HotSpotLayouter(COOPS).layout(cd)

    offsets = {fl.field.name: fl.offset for fl in layout.fields}
    assert offsets == {'x': 12, 'y': 16}
    assert layout.instance_size == 24


def test_array_sizes():
    assert sizes(ClassData.array('char[]', 'char', 4)) == [24, 32, 24, 32]
    assert sizes(ClassData.array('byte[]', 'byte', 4)) == [16, 32, 24, 32]
    assert sizes(ClassData.array('char[]', 'char', 0)) == [16, 24, 16, 16]
    # long[] base is 8-aligned even on 32-bit
    assert HotSpotLayouter(X32).layout(ClassData.array('long[]', 'long', 1)).instance_size == 24
    # references shrink under compressed refs
    assert sizes(ClassData.array('java.lang.Object[]', 'java.lang.Object', 2)) == [24, 40, 24, 32]


def test_byte_array_never_larger_than_char_array():
    for model in DATA_MODELS:
        layouter = HotSpotLayouter(model)
        for n in range(0, 40):
            char_size = layouter.layout(ClassData.array('char[]', 'char', n)).instance_size
            byte_size = layouter.layout(ClassData.array('byte[]', 'byte', n)).instance_size
            assert byte_size <= char_size


def test_printable_layout():
    text = HotSpotLayouter(COOPS).layout(STRING).to_printable()
    lines = text.splitlines()

    assert lines[0] == 'java.lang.String object internals:'
    assert '(object header)' in lines[2]
    assert any('String.hash' in line and 'int' in line for line in lines)
    assert any('String.value' in line for line in lines)
    assert '(loss due to the next object alignment)' in text
    assert lines[-1] == 'Instance size: 24 bytes'


def test_layouter_label():
    assert str(HotSpotLayouter(DataModel('test', 4))) == 'test, JDK 8 field layout'
    assert str(HotSpotLayouter(COOPS, 15)) == '64-bit, compressed refs, JDK 15 field layout'


# ==================== JDK 15+ field layout ====================

def offsets_of(layout):
    return {fl.field.name: fl.offset for fl in layout.fields}


def test_catalogues():
    assert MODELS_JDK15[:4] == DATA_MODELS
    assert [m.header_size for m in MODELS_JDK15[4:]] == [12, 12]
    assert [m.reference_size for m in MODELS_JDK15[4:]] == [8, 8]
    assert [m.header_size for m in MODELS_LILLIPUT] == [8, 8, 8]
    assert [m.reference_size for m in MODELS_LILLIPUT] == [8, 4, 4]


def test_header_gap_takes_subclass_field():
    cd = ClassData('B', (FieldData('A', 'x', 'long'), FieldData('B', 'y', 'int')))

    old = HotSpotLayouter(COOPS).layout(cd)
    assert offsets_of(old) == {'x': 16, 'y': 24}
    assert old.instance_size == 32

    new = HotSpotLayouter(COOPS, 15).layout(cd)
    assert offsets_of(new) == {'y': 12, 'x': 16}
    assert [fl.field.name for fl in new.fields] == ['y', 'x']
    assert new.instance_size == 24


def test_no_boundary_between_hierarchy_levels():
    cd = ClassData('B', (FieldData('A', 'x', 'byte'), FieldData('B', 'y', 'byte')))

    old = HotSpotLayouter(X64).layout(cd)
    assert offsets_of(old) == {'x': 16, 'y': 24}
    assert old.instance_size == 32

    new = HotSpotLayouter(X64, 15).layout(cd)
    assert offsets_of(new) == {'x': 16, 'y': 17}
    assert new.instance_size == 24


def test_same_class_sizes_agree_across_rules():
    cd = ClassData('Pair', (FieldData('Pair', 'a', 'long'), FieldData('Pair', 'b', 'int')))
    for version in (8, 15):
        layout = HotSpotLayouter(COOPS, version).layout(cd)
        assert offsets_of(layout) == {'b': 12, 'a': 16}
        assert layout.instance_size == 24
    assert HotSpotLayouter(COOPS, 15).layout(STRING).instance_size == 24


def test_string_with_compressed_class_pointers():
    klass_only = MODELS_JDK15[4]
    layout = HotSpotLayouter(klass_only, 15).layout(STRING)

    assert offsets_of(layout) == {'hash': 12, 'value': 16}
    assert layout.instance_size == 24


def test_compact_headers():
    assert HotSpotLayouter(COMPACT, 24).layout(ClassData('java.lang.Object')).instance_size == 8
    assert HotSpotLayouter(COMPACT_COOPS16, 24).layout(ClassData('java.lang.Object')).instance_size == 16

    layout = HotSpotLayouter(COMPACT_COOPS, 24).layout(STRING)
    assert layout.header_size == 8
    assert offsets_of(layout) == {'hash': 8, 'value': 12}
    assert layout.instance_size == 16

    layout = HotSpotLayouter(COMPACT, 24).layout(STRING)
    assert offsets_of(layout) == {'hash': 8, 'value': 16}
    assert layout.instance_size == 24


def test_compact_header_arrays():
    layouter = HotSpotLayouter(COMPACT, 24)
    assert layouter.layout(ClassData.array('byte[]', 'byte', 4)).instance_size == 16
    assert layouter.layout(ClassData.array('char[]', 'char', 4)).instance_size == 24
    assert layouter.layout(ClassData.array('long[]', 'long', 1)).instance_size == 24


def test_packed_printable_layout_shows_header_gap_use():
    cd = ClassData('B', (FieldData('A', 'x', 'long'), FieldData('B', 'y', 'int')))
    text = HotSpotLayouter(COOPS, 15).layout(cd).to_printable()

    assert '(alignment/padding gap)' not in text
    assert 'loss due to the next object alignment' not in text
    assert text.splitlines()[-1] == 'Instance size: 24 bytes'
