class HprofFormatError(Exception):
    """The heap dump is malformed or truncated"""


class OrderingError(HprofFormatError):
    """An instance record was seen before the class dump it depends on"""


class AnalysisError(Exception):
    """The heap dump parsed, but the estimate cannot be computed from it"""
