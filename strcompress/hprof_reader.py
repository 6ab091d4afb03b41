#!/usr/bin/env python3
# -*- coding:utf-8 -*-
"""
Streaming HPROF reader

Walks a heap dump once, front to back, and yields one event per record of
interest:
- ClassDefinition for every CLASS DUMP
- Instance for every INSTANCE DUMP
- PrimitiveArray for every PRIMITIVE ARRAY DUMP

Nothing but class metadata is retained. While walking, the reader counts
every instance, object array and primitive array into the object population
histogram (ClassData -> count), which is available as `population` once the
event stream is exhausted.

Both HotSpot (HPROF 1.0.1 / 1.0.2) and Android dumps are understood.
"""

import argparse
import os
import sys
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from strcompress.classdata import ClassData, FieldData, normalize_class_name
from strcompress.errors import HprofFormatError, OrderingError
from strcompress.multiset import Multiset


@dataclass(frozen=True)
class ClassDefinition:
    class_id: int
    name: str
    super_class_id: int
    reference_offsets: Tuple[int, ...]   # offsets of reference fields in instance data
    reference_size: int                  # bytes per reference (identifier size)


@dataclass(frozen=True)
class Instance:
    object_id: int
    class_id: int
    class_name: Optional[str]
    data: bytes


@dataclass(frozen=True)
class PrimitiveArray:
    array_id: int
    type_name: str
    length: int
    data: bytes


class HeapDumpReader:

    # HPROF Tags
    TAG_STRING = 0x01
    TAG_LOAD_CLASS = 0x02
    TAG_UNLOAD_CLASS = 0x03
    TAG_STACK_FRAME = 0x04
    TAG_STACK_TRACE = 0x05
    TAG_ALLOC_SITES = 0x06
    TAG_HEAP_SUMMARY = 0x07
    TAG_START_THREAD = 0x0A
    TAG_END_THREAD = 0x0B
    TAG_HEAP_DUMP = 0x0C
    TAG_HEAP_DUMP_SEGMENT = 0x1C
    TAG_HEAP_DUMP_END = 0x2C
    TAG_CPU_SAMPLES = 0x0D
    TAG_CONTROL_SETTINGS = 0x0E

    SKIPPED_TAGS = (TAG_UNLOAD_CLASS, TAG_STACK_FRAME, TAG_STACK_TRACE,
                    TAG_ALLOC_SITES, TAG_HEAP_SUMMARY, TAG_START_THREAD,
                    TAG_END_THREAD, TAG_HEAP_DUMP_END, TAG_CPU_SAMPLES,
                    TAG_CONTROL_SETTINGS)

    # Heap Dump Sub-record Tags
    HEAP_TAG_ROOT_UNKNOWN = 0xFF
    HEAP_TAG_ROOT_JNI_GLOBAL = 0x01
    HEAP_TAG_ROOT_JNI_LOCAL = 0x02
    HEAP_TAG_ROOT_JAVA_FRAME = 0x03
    HEAP_TAG_ROOT_NATIVE_STACK = 0x04
    HEAP_TAG_ROOT_STICKY_CLASS = 0x05
    HEAP_TAG_ROOT_THREAD_BLOCK = 0x06
    HEAP_TAG_ROOT_MONITOR_USED = 0x07
    HEAP_TAG_ROOT_THREAD_OBJECT = 0x08
    HEAP_TAG_CLASS_DUMP = 0x20
    HEAP_TAG_INSTANCE_DUMP = 0x21
    HEAP_TAG_OBJECT_ARRAY_DUMP = 0x22
    HEAP_TAG_PRIMITIVE_ARRAY_DUMP = 0x23
    HEAP_TAG_HEAP_DUMP_INFO = 0xfe
    HEAP_TAG_ROOT_INTERNED_STRING = 0x89
    HEAP_TAG_ROOT_FINALIZING = 0x8a
    HEAP_TAG_ROOT_DEBUGGER = 0x8b
    HEAP_TAG_ROOT_REFERENCE_CLEANUP = 0x8c
    HEAP_TAG_ROOT_VM_INTERNAL = 0x8d
    HEAP_TAG_ROOT_JNI_MONITOR = 0x8e
    HEAP_TAG_ROOT_UNREACHABLE = 0x90
    HEAP_TAG_PRIMITIVE_ARRAY_NODATA = 0xc3

    # Type constants
    TYPE_OBJECT = 2
    TYPE_BOOLEAN = 4
    TYPE_CHAR = 5
    TYPE_FLOAT = 6
    TYPE_DOUBLE = 7
    TYPE_BYTE = 8
    TYPE_SHORT = 9
    TYPE_INT = 10
    TYPE_LONG = 11

    def __init__(self, filename, verbose=False):
        self.filename = filename
        self.verbose = verbose
        self.hprof = None
        self.file_length = 0
        self.size_of_identifier = 4
        self.version = None
        self.strings = {}
        self.classes = {}  # class_id -> name, from LOAD CLASS

        # class_id -> {'name': str, 'super_class_id': id, 'instance_fields': [(name, type_name), ...]}
        self.class_fields = {}
        self._class_data = {}

        self.instance_counts = defaultdict(int)         # class_id -> count
        self.object_array_counts = defaultdict(int)     # (class_id, length) -> count
        self.primitive_array_counts = defaultdict(int)  # (type_name, length) -> count
        self.population = None

        self.BASIC_TYPES = {
            self.TYPE_BOOLEAN: (1, 'boolean'),
            self.TYPE_CHAR: (2, 'char'),
            self.TYPE_FLOAT: (4, 'float'),
            self.TYPE_DOUBLE: (8, 'double'),
            self.TYPE_BYTE: (1, 'byte'),
            self.TYPE_SHORT: (2, 'short'),
            self.TYPE_INT: (4, 'int'),
            self.TYPE_LONG: (8, 'long'),
        }

    def parse(self):
        """Walk the whole dump and return the object population histogram"""
        for _ in self.events():
            pass
        return self.population

    def events(self):
        """Yield ClassDefinition / Instance / PrimitiveArray records in file order"""
        self.population = None
        self.instance_counts.clear()
        self.object_array_counts.clear()
        self.primitive_array_counts.clear()
        with open(self.filename, 'rb') as self.hprof:
            self.file_length = os.fstat(self.hprof.fileno()).st_size
            self.readHead()
            yield from self.readRecords()
        self.hprof = None
        self.population = self.build_population()

    def readRecords(self):
        """Read all top-level HPROF records"""
        while self.hprof.tell() < self.file_length:
            tag = self.readInt(1)
            self.readInt(4)  # time
            length = self.readInt(4)
            if tag == self.TAG_STRING:
                self.readString(length)
            elif tag == self.TAG_LOAD_CLASS:
                self.readLoadClass()
            elif tag in (self.TAG_HEAP_DUMP, self.TAG_HEAP_DUMP_SEGMENT):
                yield from self.readHeapDumpInternal(length)
            elif tag in self.SKIPPED_TAGS:
                self.seek(length)
            else:
                raise HprofFormatError('Not supported tag: %d, position: %d' % (tag, self.hprof.tell()))

    def readHead(self):
        """Read HPROF file header"""
        version_bytes = []
        while True:
            b = self.read(1)
            if b == b'\x00':
                break
            version_bytes.append(b)
        self.version = b''.join(version_bytes).decode('utf-8', 'replace')
        if not self.version.startswith('JAVA PROFILE'):
            raise HprofFormatError('Not an HPROF file: %s' % self.filename)
        self.size_of_identifier = self.readInt(4)
        if self.size_of_identifier <= 0:
            raise HprofFormatError('Bad identifier size: %d' % self.size_of_identifier)
        timestamp_ms = self.readInt(8)
        if self.verbose:
            print("HPROF version: %s" % (self.version), file=sys.stderr)
            print("Identifier size: %d" % (self.size_of_identifier), file=sys.stderr)
            print("Timestamp: %s" % (self.formatTimestamp(timestamp_ms)), file=sys.stderr)
        self.BASIC_TYPES[self.TYPE_OBJECT] = (self.size_of_identifier, 'object')

    def readString(self, length):
        """Read UTF8 string record"""
        string_id = self.readId()
        self.strings[string_id] = self.read(length - self.size_of_identifier).decode('utf-8', 'ignore')

    def readLoadClass(self):
        """Read class load record"""
        self.readInt(4)  # class serial
        class_id = self.readId()
        self.readInt(4)  # stack trace serial
        class_name_id = self.readId()
        self.classes[class_id] = normalize_class_name(self.strings.get(class_name_id, 'unknown'))

    def readHeapDumpInternal(self, length):
        """Read heap dump segment, yielding the object records"""
        available = length
        while available > 0:
            start = self.hprof.tell()
            tag = self.readInt(1)

            if tag == self.HEAP_TAG_CLASS_DUMP:
                yield self.readClassDump()
            elif tag == self.HEAP_TAG_INSTANCE_DUMP:
                yield self.readInstanceDump()
            elif tag == self.HEAP_TAG_OBJECT_ARRAY_DUMP:
                self.readObjectArrayDump()
            elif tag == self.HEAP_TAG_PRIMITIVE_ARRAY_DUMP:
                yield self.readPrimitiveArrayDump()
            elif tag == self.HEAP_TAG_PRIMITIVE_ARRAY_NODATA:
                self.readPrimitiveArrayNoData()
            else:
                skip = self.get_heap_subrecord_length(tag)
                if skip is None:
                    raise HprofFormatError('Not supported heap dump tag: 0x%02x, position: %d'
                                           % (tag, self.hprof.tell() - 1))
                self.seek(skip)

            end = self.hprof.tell()
            available -= end - start

    # ==================== Class and Object Parsing ====================

    def get_heap_subrecord_length(self, tag):
        """Get length of GC root and info sub-records, None if the tag is unknown"""
        if tag in [self.HEAP_TAG_ROOT_UNKNOWN, self.HEAP_TAG_ROOT_STICKY_CLASS,
                   self.HEAP_TAG_ROOT_MONITOR_USED, self.HEAP_TAG_ROOT_INTERNED_STRING,
                   self.HEAP_TAG_ROOT_FINALIZING, self.HEAP_TAG_ROOT_DEBUGGER,
                   self.HEAP_TAG_ROOT_REFERENCE_CLEANUP, self.HEAP_TAG_ROOT_VM_INTERNAL,
                   self.HEAP_TAG_ROOT_UNREACHABLE]:
            return self.size_of_identifier
        elif tag == self.HEAP_TAG_ROOT_JNI_GLOBAL:
            return 2 * self.size_of_identifier
        elif tag in [self.HEAP_TAG_ROOT_JNI_LOCAL, self.HEAP_TAG_ROOT_JAVA_FRAME,
                     self.HEAP_TAG_ROOT_THREAD_OBJECT, self.HEAP_TAG_ROOT_JNI_MONITOR]:
            return self.size_of_identifier + 8
        elif tag == self.HEAP_TAG_ROOT_NATIVE_STACK or tag == self.HEAP_TAG_ROOT_THREAD_BLOCK:
            return self.size_of_identifier + 4
        elif tag == self.HEAP_TAG_HEAP_DUMP_INFO:
            return 4 + self.size_of_identifier
        return None

    def readClassDump(self):
        """Read class dump; keeps the instance field definitions"""
        class_id = self.readId()
        self.readInt(4)  # stack trace serial
        super_class_id = self.readId()
        self.seek(5 * self.size_of_identifier)  # loader, signers, protection domain, 2 reserved
        self.readInt(4)  # instance size

        self.skipClassConstantFields()
        self.skipClassStaticFields()
        instance_fields = self.readInstanceFieldDefinitions()

        name = self.classes.get(class_id, 'unknown')
        self.class_fields[class_id] = {
            'name': name,
            'super_class_id': super_class_id,
            'instance_fields': instance_fields,
        }

        offsets = []
        offset = 0
        for _, type_name in instance_fields:
            if type_name == 'object':
                offsets.append(offset)
            offset += self.sizeOfType(type_name)

        return ClassDefinition(class_id, name, super_class_id, tuple(offsets), self.size_of_identifier)

    def skipClassConstantFields(self):
        count = self.readInt(2)
        for _ in range(count):
            self.readInt(2)  # constant pool index
            self.seek(self.basicType(self.readInt(1))[0])

    def skipClassStaticFields(self):
        count = self.readInt(2)
        for _ in range(count):
            self.readId()  # name
            self.seek(self.basicType(self.readInt(1))[0])

    def readInstanceFieldDefinitions(self):
        """Read instance field definitions as (name, type_name) pairs"""
        count = self.readInt(2)
        fields = []
        for _ in range(count):
            name_id = self.readId()
            _, type_name = self.basicType(self.readInt(1))
            fields.append((self.strings.get(name_id, 'unknown'), type_name))
        return fields

    def readInstanceDump(self):
        instance_id = self.readId()
        self.readInt(4)  # stack trace serial
        class_id = self.readId()
        fields_byte_size = self.readInt(4)
        fields_data = self.read(fields_byte_size)

        if class_id not in self.class_fields:
            raise OrderingError('Instance 0x%x refers to class 0x%x (%s) before its class dump'
                                % (instance_id, class_id, self.classes.get(class_id, 'unknown')))
        self.instance_counts[class_id] += 1
        return Instance(instance_id, class_id, self.classes.get(class_id), fields_data)

    def readObjectArrayDump(self):
        self.readId()  # array id
        self.readInt(4)  # stack trace serial
        length = self.readInt(4)
        array_class_id = self.readId()
        self.seek(length * self.size_of_identifier)
        self.object_array_counts[(array_class_id, length)] += 1

    def readPrimitiveArrayDump(self):
        array_id = self.readId()
        self.readInt(4)  # stack trace serial
        length = self.readInt(4)
        size, type_name = self.primitiveType(self.readInt(1))
        data = self.read(size * length)
        self.primitive_array_counts[(type_name, length)] += 1
        return PrimitiveArray(array_id, type_name, length, data)

    def readPrimitiveArrayNoData(self):
        """Read primitive array without data (Android specific)"""
        self.readId()  # array id
        self.readInt(4)  # stack trace serial
        length = self.readInt(4)
        _, type_name = self.primitiveType(self.readInt(1))
        self.primitive_array_counts[(type_name, length)] += 1

    # ==================== Class descriptors and population ====================

    def class_data(self, class_id):
        """ClassData for a dumped class, superclass fields first"""
        if class_id in self._class_data:
            return self._class_data[class_id]
        if class_id not in self.class_fields:
            raise HprofFormatError('Class 0x%x has no class dump' % class_id)

        info = self.class_fields[class_id]
        fields = []
        current_class_id = class_id
        while current_class_id != 0:
            current = self.class_fields.get(current_class_id)
            if current is None:
                raise HprofFormatError('Superclass 0x%x of %s has no class dump'
                                       % (current_class_id, info['name']))
            declared = [FieldData(current['name'], name, self.fieldTypeName(type_name))
                        for name, type_name in current['instance_fields']]
            fields = declared + fields
            current_class_id = current['super_class_id']

        cd = ClassData(info['name'], tuple(fields))
        self._class_data[class_id] = cd
        return cd

    def build_population(self):
        population = Multiset()
        for class_id, count in self.instance_counts.items():
            population.add(self.class_data(class_id), count)
        for (class_id, length), count in self.object_array_counts.items():
            name = self.classes.get(class_id, 'java.lang.Object[]')
            component = name[:-2] if name.endswith('[]') else 'java.lang.Object'
            population.add(ClassData.array(name, component, length), count)
        for (type_name, length), count in self.primitive_array_counts.items():
            population.add(ClassData.array(type_name + '[]', type_name, length), count)
        return population

    # ==================== Utility Methods ====================

    def basicType(self, type_id):
        if type_id == self.TYPE_OBJECT:
            return self.size_of_identifier, 'object'
        if type_id not in self.BASIC_TYPES:
            raise HprofFormatError('Unknown basic type: %d, position: %d' % (type_id, self.hprof.tell()))
        return self.BASIC_TYPES[type_id]

    def primitiveType(self, type_id):
        if type_id == self.TYPE_OBJECT:
            raise HprofFormatError('Object type in primitive array, position: %d' % self.hprof.tell())
        return self.basicType(type_id)

    def sizeOfType(self, type_name):
        if type_name == 'object':
            return self.size_of_identifier
        for size, name in self.BASIC_TYPES.values():
            if name == type_name:
                return size
        raise HprofFormatError('Unknown field type: %s' % type_name)

    @staticmethod
    def formatTimestamp(timestamp_ms):
        try:
            return datetime.fromtimestamp(timestamp_ms / 1000)
        except (ValueError, OverflowError, OSError):
            return "%d ms (out of range)" % timestamp_ms

    @staticmethod
    def fieldTypeName(type_name):
        return 'java.lang.Object' if type_name == 'object' else type_name

    def readInt(self, length):
        return int.from_bytes(self.read(length), byteorder='big', signed=False)

    def readId(self):
        return self.readInt(self.size_of_identifier)

    def read(self, length):
        data = self.hprof.read(length)
        if len(data) != length:
            raise HprofFormatError('Truncated heap dump: wanted %d bytes at offset %d, got %d'
                                   % (length, self.hprof.tell() - len(data), len(data)))
        return data

    def seek(self, length):
        if self.hprof.tell() + length > self.file_length:
            raise HprofFormatError('Truncated heap dump: record runs past end of file at offset %d'
                                   % self.hprof.tell())
        self.hprof.seek(length, 1)


def main(argv=None):
    arg_parser = argparse.ArgumentParser(description="Print the object population of an HPROF heap dump")
    arg_parser.add_argument('file', help="HPROF file path")
    arg_parser.add_argument('-t', '--top', type=int, default=20, help="show TOP N classes by count (default 20)")
    args = arg_parser.parse_args(argv)

    try:
        population = HeapDumpReader(args.file, verbose=True).parse()
    except (HprofFormatError, OSError) as e:
        print(f"Failed to parse HPROF file: {e}", file=sys.stderr)
        return 1

    by_name = defaultdict(int)
    for cd, count in population.items():
        by_name[cd.name] += count
    print(f"{'Class':<60} {'Count':<12}")
    print("-" * 72)
    for name, count in sorted(by_name.items(), key=lambda x: x[1], reverse=True)[:args.top]:
        print(f"{name:<60} {count:<12,}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
