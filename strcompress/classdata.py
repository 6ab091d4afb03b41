"""
Structural class descriptors.

A ClassData is what the heap dump tells us about a class: its name and its
instance fields (superclass fields first), or, for arrays, the component
type and the length. Descriptors are immutable and hashable so they can key
the population histogram.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

PRIMITIVE_SIZES = {
    'boolean': 1,
    'byte': 1,
    'char': 2,
    'short': 2,
    'int': 4,
    'float': 4,
    'long': 8,
    'double': 8,
}

# JVM descriptor letters as used in HotSpot array class names ("[C")
DESCRIPTOR_TYPES = {
    'Z': 'boolean',
    'B': 'byte',
    'C': 'char',
    'S': 'short',
    'I': 'int',
    'F': 'float',
    'J': 'long',
    'D': 'double',
}


def is_primitive(type_name):
    return type_name in PRIMITIVE_SIZES


def normalize_class_name(name):
    """
    Map HotSpot internal names to Java source names.

    java/lang/String     -> java.lang.String
    [C                   -> char[]
    [[Ljava/lang/Object; -> java.lang.Object[][]

    Names already in source form (Android dumps) pass through unchanged.
    """
    if not name:
        return name
    dims = 0
    while dims < len(name) and name[dims] == '[':
        dims += 1
    base = name[dims:]
    if dims:
        if base.startswith('L') and base.endswith(';'):
            base = base[1:-1]
        elif base in DESCRIPTOR_TYPES:
            base = DESCRIPTOR_TYPES[base]
    return base.replace('/', '.') + '[]' * dims


@dataclass(frozen=True)
class FieldData:
    declaring_class: str
    name: str
    type_name: str

    @property
    def is_reference(self):
        return not is_primitive(self.type_name)


@dataclass(frozen=True)
class ClassData:
    name: str
    fields: Tuple[FieldData, ...] = ()
    array_component: Optional[str] = None
    array_length: int = 0

    @classmethod
    def array(cls, name, component, length):
        return cls(name, (), component, length)

    @property
    def is_array(self):
        return self.array_component is not None

    def with_field(self, field):
        """Return a copy of this descriptor with one more field appended"""
        if self.is_array:
            raise ValueError("Cannot add fields to array class %s" % self.name)
        return ClassData(self.name, self.fields + (field,))
