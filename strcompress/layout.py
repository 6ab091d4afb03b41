"""
Object layout simulation.

Given a ClassData and a DataModel, compute where a HotSpot-like VM would put
every field and how many bytes an instance occupies, header and padding
included. Models are hypothetical: the layout of a 32-bit or compressed
references VM is simulated regardless of the VM that produced the dump.
"""

from dataclasses import dataclass
from itertools import groupby
from typing import Tuple

from strcompress.classdata import PRIMITIVE_SIZES, ClassData, FieldData


def align(value, alignment):
    return (value + alignment - 1) // alignment * alignment


@dataclass(frozen=True)
class DataModel:
    label: str
    address_size: int
    compressed_refs: bool = False
    compressed_klass: bool = False
    object_alignment: int = 8
    compact_header: bool = False

    @property
    def mark_size(self):
        return self.address_size

    @property
    def klass_size(self):
        return 4 if self.compressed_klass else self.address_size

    @property
    def header_size(self):
        if self.compact_header:
            # class pointer lives in the mark word
            return self.mark_size
        return self.mark_size + self.klass_size

    @property
    def array_header_size(self):
        # header plus the 4-byte length
        return self.header_size + 4

    @property
    def reference_size(self):
        return 4 if self.compressed_refs else self.address_size

    @property
    def compressed_shift(self):
        if not self.compressed_refs:
            return 0
        return self.object_alignment.bit_length() - 1

    @property
    def compressed_base(self):
        # zero-based compressed references only
        return 0

    def size_of(self, type_name):
        return PRIMITIVE_SIZES.get(type_name, self.reference_size)

    def __str__(self):
        return self.label


DATA_MODELS = (
    DataModel('32-bit', 4),
    DataModel('64-bit', 8),
    DataModel('64-bit, compressed refs', 8, compressed_refs=True, compressed_klass=True),
    DataModel('64-bit, compressed refs, 16-byte align', 8, compressed_refs=True, compressed_klass=True,
              object_alignment=16),
)

MODELS_JDK8 = DATA_MODELS

MODELS_JDK15 = DATA_MODELS + (
    DataModel('64-bit, compressed class pointers', 8, compressed_klass=True),
    DataModel('64-bit, compressed class pointers, 16-byte align', 8, compressed_klass=True, object_alignment=16),
)

MODELS_LILLIPUT = (
    DataModel('64-bit, compact headers', 8, compact_header=True),
    DataModel('64-bit, compact headers, compressed refs', 8, compressed_refs=True, compact_header=True),
    DataModel('64-bit, compact headers, compressed refs, 16-byte align', 8, compressed_refs=True,
              compact_header=True, object_alignment=16),
)


@dataclass(frozen=True)
class FieldLayout:
    offset: int
    size: int
    field: FieldData


@dataclass(frozen=True)
class ClassLayout:
    class_data: ClassData
    model: DataModel
    header_size: int
    fields: Tuple[FieldLayout, ...]
    instance_size: int

    def to_printable(self):
        cd = self.class_data
        lines = ["%s object internals:" % cd.name,
                 " %6s %5s %18s %s" % ("OFFSET", "SIZE", "TYPE", "DESCRIPTION"),
                 " %6d %5d %18s %s" % (0, self.header_size, "", "(object header)")]
        next_free = self.header_size
        for fl in self.fields:
            if fl.offset > next_free:
                lines.append(" %6d %5d %18s %s" % (next_free, fl.offset - next_free, "", "(alignment/padding gap)"))
            short_owner = fl.field.declaring_class.rsplit('.', 1)[-1]
            lines.append(" %6d %5d %18s %s.%s" % (fl.offset, fl.size, _short_type(fl.field.type_name),
                                                   short_owner, fl.field.name))
            next_free = fl.offset + fl.size
        if cd.is_array:
            data_size = cd.array_length * self.model.size_of(cd.array_component)
            lines.append(" %6d %5d %18s %s" % (self.header_size, data_size, cd.array_component,
                                               "[%d elements]" % cd.array_length))
            next_free = self.header_size + data_size
        if self.instance_size > next_free:
            lines.append(" %6d %5d %18s %s" % (next_free, self.instance_size - next_free, "",
                                               "(loss due to the next object alignment)"))
        lines.append("Instance size: %d bytes" % self.instance_size)
        return "\n".join(lines)


def _short_type(type_name):
    return type_name if type_name in PRIMITIVE_SIZES else type_name.rsplit('.', 1)[-1]


class HotSpotLayouter:
    """
    HotSpot field layout, as of a given JDK release.

    Before JDK 15:
    - fields of each class in the hierarchy are laid out after the
      superclass fields, which end on a reference-size boundary
    - within a class: longs/doubles, ints/floats, shorts/chars,
      bytes/booleans, then references
    - when the first 8-byte field would leave a gap after the previous
      fields, smaller fields are moved into the gap

    JDK 15 and later:
    - superclass fields still come first, but there is no boundary between
      hierarchy levels
    - within a class, primitives largest first, then references, each one
      put into the first hole it fits, the header gap included
    """

    def __init__(self, model, layout_version=8):
        self.model = model
        self.layout_version = layout_version

    def layout(self, cd):
        model = self.model
        if cd.is_array:
            element_size = model.size_of(cd.array_component)
            word = 4 if model.compact_header else model.address_size
            base = align(model.array_header_size, max(word, element_size))
            size = align(base + cd.array_length * element_size, model.object_alignment)
            return ClassLayout(cd, model, base, (), size)

        placed = []
        if self.layout_version >= 15:
            offset = self._layout_packed(cd.fields, placed)
        else:
            offset = model.header_size
            first = True
            for _, level in groupby(cd.fields, key=lambda f: f.declaring_class):
                if not first:
                    offset = align(offset, model.reference_size)
                offset = self._layout_level(list(level), offset, placed)
                first = False
        size = align(max(offset, model.header_size), model.object_alignment)
        return ClassLayout(cd, model, model.header_size, tuple(placed), size)

    def _layout_level(self, fields, offset, placed):
        buckets = {8: [], 4: [], 2: [], 1: []}
        oops = []
        for f in fields:
            if f.is_reference:
                oops.append(f)
            else:
                buckets[PRIMITIVE_SIZES[f.type_name]].append(f)

        def place(f, size):
            nonlocal offset
            offset = align(offset, size)
            placed.append(FieldLayout(offset, size, f))
            offset += size

        ref_size = self.model.reference_size
        if buckets[8] and offset % 8:
            gap_end = align(offset, 8)
            for size, queue in ((4, buckets[4]), (2, buckets[2]), (1, buckets[1]), (ref_size, oops)):
                while queue and align(offset, size) + size <= gap_end:
                    place(queue.pop(0), size)

        for size in (8, 4, 2, 1):
            for f in buckets[size]:
                place(f, size)
        for f in oops:
            place(f, ref_size)
        return offset

    def _layout_packed(self, fields, placed):
        holes = []  # [start, end) ranges left free by alignment
        end = self.model.header_size

        def place(f, size):
            nonlocal end
            for i, (start, stop) in enumerate(holes):
                at = align(start, size)
                if at + size <= stop:
                    del holes[i]
                    if at > start:
                        holes.insert(i, (start, at))
                        i += 1
                    if at + size < stop:
                        holes.insert(i, (at + size, stop))
                    break
            else:
                at = align(end, size)
                if at > end:
                    holes.append((end, at))
                end = at + size
            placed.append(FieldLayout(at, size, f))

        ref_size = self.model.reference_size
        for _, level in groupby(fields, key=lambda f: f.declaring_class):
            level = list(level)
            primitives = sorted((f for f in level if not f.is_reference),
                                key=lambda f: PRIMITIVE_SIZES[f.type_name], reverse=True)
            for f in primitives:
                place(f, PRIMITIVE_SIZES[f.type_name])
            for f in level:
                if f.is_reference:
                    place(f, ref_size)
        placed.sort(key=lambda fl: fl.offset)
        return end

    def __str__(self):
        return "%s, JDK %d field layout" % (self.model, self.layout_version)
