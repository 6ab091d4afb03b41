#!/usr/bin/env python3
# -*- coding:utf-8 -*-
"""
String compaction estimator

Reads an HPROF heap dump twice:
1. find java.lang.String and collect the ids of the char[] arrays its
   instances point to
2. classify each of those arrays as compressible (every char fits in one
   byte) or not, bucketing them by byte length

then, for each simulated VM data model, projects the heap footprint with
1-byte storage for the compressible arrays against the cost of a
discriminator field (boolean flag, or extra reference) added to every
String, and prints one CSV-ish row per model.
"""

import argparse
import struct
import sys
from dataclasses import dataclass, field
from typing import Optional, Set

from strcompress.classdata import ClassData, FieldData
from strcompress.errors import AnalysisError, HprofFormatError, OrderingError
from strcompress.hprof_reader import ClassDefinition, HeapDumpReader, Instance, PrimitiveArray
from strcompress.layout import DATA_MODELS, HotSpotLayouter
from strcompress.multiset import Multiset

STRING_CLASS = 'java.lang.String'

BOOLEAN_FLAG = FieldData(STRING_CLASS, 'isCompressed', 'boolean')
REFERENCE_FIELD = FieldData(STRING_CLASS, 'coder', 'java.lang.Object')

HEADER_COLUMNS = ("total", "String", "String+bool", "String+oop", "1-byte char[]",
                  "2-byte char[]", "savings(bool)", "savings(oop)")


@dataclass(frozen=True)
class TextObjectDescriptor:
    """Where a String instance keeps the reference to its char[]"""
    class_id: int
    value_offset: int
    value_size: int


@dataclass
class AnalysisContext:
    """State of one analysis run, filled in by the two passes"""
    path: str
    string: Optional[TextObjectDescriptor] = None
    referenced_arrays: Set[int] = field(default_factory=set)
    compressible: Multiset = field(default_factory=Multiset)
    non_compressible: Multiset = field(default_factory=Multiset)
    population: Multiset = field(default_factory=Multiset)


@dataclass(frozen=True)
class ProjectionResult:
    model: str
    total: int
    strings: int
    strings_bool: int
    strings_ref: int
    compressible_bytes: int
    non_compressible_bytes: int
    savings_bool: float
    savings_ref: float


def is_compressible(data):
    """True if every big-endian 16-bit char in data has a zero high byte"""
    for c in range(0, len(data), 2):
        if data[c] != 0:
            return False
    return True


def read_reference(data, offset, size):
    if size == 4:
        fmt = '>I'
    elif size == 8:
        fmt = '>Q'
    else:
        raise AnalysisError('Unsupported reference size: %d' % size)
    try:
        return struct.unpack_from(fmt, data, offset)[0]
    except struct.error as e:
        raise HprofFormatError('String instance too short for a reference at offset %d: %s'
                               % (offset, e)) from e


# ==================== Pass 1: String -> char[] references ====================

def discover_string_arrays(events, context):
    for event in events:
        if isinstance(event, ClassDefinition):
            if event.name == STRING_CLASS and context.string is None:
                if not event.reference_offsets:
                    raise AnalysisError('%s has no reference field, characters are not stored in a separate array'
                                        % STRING_CLASS)
                context.string = TextObjectDescriptor(event.class_id, event.reference_offsets[0],
                                                      event.reference_size)
        elif isinstance(event, Instance):
            string = context.string
            if string is None:
                if event.class_name == STRING_CLASS:
                    raise OrderingError('%s instance 0x%x seen before its class dump'
                                        % (STRING_CLASS, event.object_id))
            elif event.class_id == string.class_id:
                context.referenced_arrays.add(read_reference(event.data, string.value_offset, string.value_size))
    context.referenced_arrays = frozenset(context.referenced_arrays)
    return context


# ==================== Pass 2: classify referenced arrays ====================

def classify_string_arrays(events, context):
    for event in events:
        if isinstance(event, PrimitiveArray) and event.array_id in context.referenced_arrays:
            if is_compressible(event.data):
                context.compressible.add(len(event.data))
            else:
                context.non_compressible.add(len(event.data))
    return context


def scan(path, verbose=False):
    """Run both passes over the heap dump at path"""
    context = AnalysisContext(path)

    if verbose:
        print("Pass 1: locating %s backing arrays..." % STRING_CLASS, file=sys.stderr)
    discover_string_arrays(HeapDumpReader(path, verbose).events(), context)
    if context.string is None:
        raise AnalysisError('No %s class found in %s' % (STRING_CLASS, path))
    if verbose:
        print("  %d referenced arrays" % len(context.referenced_arrays), file=sys.stderr)
        print("Pass 2: classifying arrays...", file=sys.stderr)

    reader = HeapDumpReader(path)
    classify_string_arrays(reader.events(), context)
    context.population = reader.population
    if verbose:
        print("  %d compressible, %d non-compressible"
              % (context.compressible.size(), context.non_compressible.size()), file=sys.stderr)
    return context


# ==================== Footprint projection ====================

def project_footprint(context, layouter):
    strings = 0
    strings_bool = 0
    strings_ref = 0

    total = 0
    for cd, count in context.population.items():
        if cd.name == STRING_CLASS:
            strings += layouter.layout(cd).instance_size * count
            strings_bool += layouter.layout(cd.with_field(BOOLEAN_FLAG)).instance_size * count
            strings_ref += layouter.layout(cd.with_field(REFERENCE_FIELD)).instance_size * count
        else:
            total += layouter.layout(cd).instance_size * count

    # histogram keys are char[] byte lengths, laid out as element counts
    savings = 0
    compressible_bytes = 0
    for length, count in context.compressible.items():
        char_size = layouter.layout(ClassData.array('char[]', 'char', length)).instance_size
        byte_size = layouter.layout(ClassData.array('byte[]', 'byte', length)).instance_size
        savings += (char_size - byte_size) * count
        compressible_bytes += char_size * count

    non_compressible_bytes = 0
    for length, count in context.non_compressible.items():
        char_size = layouter.layout(ClassData.array('char[]', 'char', length)).instance_size
        non_compressible_bytes += char_size * count

    total += strings
    if total == 0:
        raise AnalysisError('Heap dump %s has a zero footprint under %s' % (context.path, layouter))

    saving_bool = 100.0 * (savings - (strings_bool - strings)) / total
    saving_ref = 100.0 * (savings - (strings_ref - strings)) / total
    return ProjectionResult(str(layouter.model), total, strings, strings_bool, strings_ref,
                            compressible_bytes, non_compressible_bytes, saving_bool, saving_ref)


# ==================== Report ====================

def format_header():
    columns = ", ".join('"%12s"' % c for c in HEADER_COLUMNS)
    return '%s, "%s", "%s"' % (columns, "hprof file", "model")


def format_row(result, path):
    return '%14d, %14d, %14d, %14d, %14d, %14d, %14.3f, %14.3f, "%s", "%s"' % (
        result.total, result.strings, result.strings_bool, result.strings_ref,
        result.compressible_bytes, result.non_compressible_bytes,
        result.savings_bool, result.savings_ref, path, result.model)


def print_report(results, path, out=None):
    out = out or sys.stdout
    print(format_header(), file=out)
    for result in results:
        print(format_row(result, path), file=out)


def main(argv=None):
    arg_parser = argparse.ArgumentParser(
        prog='strcompress',
        description="Estimate java.lang.String compaction savings from an HPROF heap dump")
    arg_parser.add_argument('hprof', nargs='?', help="HPROF heap dump path")
    arg_parser.add_argument('-v', '--verbose', action='store_true', help="print progress to stderr")
    args = arg_parser.parse_args(argv)
    if args.hprof is None:
        print("Usage: strcompress [-v] heapdump.hprof", file=sys.stderr)
        return 1

    try:
        context = scan(args.hprof, args.verbose)
        results = [project_footprint(context, HotSpotLayouter(model)) for model in DATA_MODELS]
    except (HprofFormatError, AnalysisError, OSError) as e:
        print(f"strcompress: {e}", file=sys.stderr)
        return 1

    print_report(results, args.hprof)
    return 0


if __name__ == '__main__':
    sys.exit(main())
