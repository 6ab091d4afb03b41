"""
strcompress - estimate java.lang.String compaction savings from HPROF heap dumps.
"""

__version__ = "0.1.0"
