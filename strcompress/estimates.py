#!/usr/bin/env python3
# -*- coding:utf-8 -*-
"""
Layout estimates

Simulate the field layout of one class from a heap dump under every data
model, with the JDK 8 field layout rules, the JDK 15 ones, and the compact
object headers of Lilliput.
"""

import argparse
import sys

from strcompress.classdata import normalize_class_name
from strcompress.errors import AnalysisError, HprofFormatError
from strcompress.hprof_reader import HeapDumpReader
from strcompress.layout import MODELS_JDK8, MODELS_JDK15, MODELS_LILLIPUT, HotSpotLayouter

# (data models, field layout rules)
CONFIGURATIONS = (
    (MODELS_JDK8, 8),
    (MODELS_JDK8, 15),
    (MODELS_JDK15, 15),
    (MODELS_LILLIPUT, 24),
)


def find_class(reader, class_name):
    """ClassData of the first dumped class named class_name, or None"""
    target = normalize_class_name(class_name)
    for class_id, info in reader.class_fields.items():
        if info['name'] == target:
            return reader.class_data(class_id)
    return None


def layouters(configurations=CONFIGURATIONS):
    return [HotSpotLayouter(model, version) for models, version in configurations for model in models]


def estimate(cd, configurations=CONFIGURATIONS):
    """[(layouter, layout of cd)] for every configured layouter"""
    return [(layouter, layouter.layout(cd)) for layouter in layouters(configurations)]


def main(argv=None):
    arg_parser = argparse.ArgumentParser(
        prog='strcompress-estimates',
        description="Simulate the class layout in different VM modes")
    arg_parser.add_argument('hprof', help="HPROF heap dump path")
    arg_parser.add_argument('class_name', help="class to lay out, e.g. java.lang.String")
    args = arg_parser.parse_args(argv)

    reader = HeapDumpReader(args.hprof)
    try:
        reader.parse()
        cd = find_class(reader, args.class_name)
        if cd is None:
            raise AnalysisError('Class %s not found in %s' % (args.class_name, args.hprof))
    except (HprofFormatError, AnalysisError, OSError) as e:
        print(f"strcompress-estimates: {e}", file=sys.stderr)
        return 1

    for layouter, layout in estimate(cd):
        print("***** %s" % layouter)
        print(layout.to_printable())
        print()
    return 0


if __name__ == '__main__':
    sys.exit(main())
