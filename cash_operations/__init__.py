"""
Cash Operations Store

Dual-keyed storage of cash-in/cash-out operations over a partitioned
key-value table, with a blockchain hash index and chunked full scans.
"""

__version__ = "1.0.0"
