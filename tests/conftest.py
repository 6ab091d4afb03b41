import struct

import pytest

TYPE_OBJECT = 2
TYPE_BOOLEAN = 4
TYPE_CHAR = 5
TYPE_BYTE = 8
TYPE_INT = 10
TYPE_LONG = 11


class HprofWriter:
    """Builds small synthetic HPROF files: top-level records first, then the heap dump segments"""

    def __init__(self, id_size=8, version='JAVA PROFILE 1.0.2', timestamp=0):
        self.id_size = id_size
        self.version = version
        self.timestamp = timestamp
        self.records = []
        self.segments = [[]]
        self.heap = self.segments[-1]
        self._next_string_id = 0x1000

    def id(self, value):
        return value.to_bytes(self.id_size, 'big')

    def record(self, tag, body):
        self.records.append(struct.pack('>BII', tag, 0, len(body)) + body)

    def string(self, text):
        string_id = self._next_string_id
        self._next_string_id += 1
        self.record(0x01, self.id(string_id) + text.encode('utf-8'))
        return string_id

    def load_class(self, class_id, name):
        name_id = self.string(name)
        self.record(0x02, struct.pack('>I', 1) + self.id(class_id) + struct.pack('>I', 0) + self.id(name_id))

    def class_dump(self, class_id, super_id=0, fields=(), statics=()):
        """fields: [(name, type_code)], statics: [(name, type_code, value_bytes)]"""
        body = bytes([0x20]) + self.id(class_id) + struct.pack('>I', 0) + self.id(super_id)
        body += self.id(0) * 5 + struct.pack('>I', 0)
        body += struct.pack('>H', 0)
        body += struct.pack('>H', len(statics))
        for name, type_code, value in statics:
            body += self.id(self.string(name)) + bytes([type_code]) + value
        body += struct.pack('>H', len(fields))
        for name, type_code in fields:
            body += self.id(self.string(name)) + bytes([type_code])
        self.heap.append(body)

    def instance(self, object_id, class_id, data):
        self.heap.append(bytes([0x21]) + self.id(object_id) + struct.pack('>I', 0) + self.id(class_id)
                         + struct.pack('>I', len(data)) + data)

    def object_array(self, array_id, class_id, elements):
        self.heap.append(bytes([0x22]) + self.id(array_id) + struct.pack('>II', 0, len(elements))
                         + self.id(class_id) + b''.join(self.id(e) for e in elements))

    def primitive_array(self, array_id, type_code, length, data):
        self.heap.append(bytes([0x23]) + self.id(array_id) + struct.pack('>II', 0, length)
                         + bytes([type_code]) + data)

    def sticky_class_root(self, class_id):
        self.heap.append(bytes([0x05]) + self.id(class_id))

    def raw_heap(self, data):
        self.heap.append(data)

    def segment(self):
        """Start a new HEAP DUMP SEGMENT; later sub-records go into it"""
        self.heap = []
        self.segments.append(self.heap)

    def build(self):
        header = self.version.encode('ascii') + b'\x00' + struct.pack('>IQ', self.id_size, self.timestamp)
        segments = b''
        for heap in self.segments:
            body = b''.join(heap)
            segments += struct.pack('>BII', 0x1C, 0, len(body)) + body
        end = struct.pack('>BII', 0x2C, 0, 0)
        return header + b''.join(self.records) + segments + end

    def write(self, path):
        path.write_bytes(self.build())
        return str(path)


OBJECT_ID = 1
STRING_ID = 2
CHAR_ARRAY_ID = 3
OBJECT_ARRAY_ID = 4


def add_string_classes(writer, hotspot_names=True):
    """java.lang.Object and a JDK 8 java.lang.String (value: char[], hash: int)"""
    writer.load_class(OBJECT_ID, 'java/lang/Object' if hotspot_names else 'java.lang.Object')
    writer.load_class(STRING_ID, 'java/lang/String' if hotspot_names else 'java.lang.String')
    writer.load_class(CHAR_ARRAY_ID, '[C' if hotspot_names else 'char[]')
    writer.load_class(OBJECT_ARRAY_ID, '[Ljava/lang/Object;' if hotspot_names else 'java.lang.Object[]')
    writer.sticky_class_root(STRING_ID)
    writer.class_dump(OBJECT_ID)
    writer.class_dump(STRING_ID, OBJECT_ID, [('value', TYPE_OBJECT), ('hash', TYPE_INT)])


def add_string(writer, object_id, array_id, text):
    data = text.encode('utf-16-be')
    writer.instance(object_id, STRING_ID, writer.id(array_id) + struct.pack('>i', 0))
    writer.primitive_array(array_id, TYPE_CHAR, len(data) // 2, data)


@pytest.fixture
def writer():
    return HprofWriter()


@pytest.fixture
def string_dump(tmp_path):
    """Factory: write a dump holding the given strings plus one Object and one Object[]"""
    def make(texts, id_size=8, name='heap.hprof'):
        w = HprofWriter(id_size=id_size)
        add_string_classes(w)
        for i, text in enumerate(texts):
            add_string(w, 0x100 + i, 0x200 + i, text)
        w.instance(0x300, OBJECT_ID, b'')
        w.object_array(0x301, OBJECT_ARRAY_ID, [0x100, 0])
        # a char[] no String points to
        w.primitive_array(0x302, TYPE_CHAR, 1, 'Я'.encode('utf-16-be'))
        return w.write(tmp_path / name)
    return make
