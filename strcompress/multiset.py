"""
Multiset: key -> occurrence count.

Used to aggregate array sizes and class populations without keeping
per-object detail around.
"""

from collections import Counter


class Multiset(Counter):
    """Counter with the add/count vocabulary used by the analysis passes"""

    def add(self, key, n=1):
        self[key] += n

    def count(self, key):
        return self[key]

    def size(self):
        """Total number of occurrences over all keys"""
        return sum(self.values())
