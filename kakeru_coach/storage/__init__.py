"""
Storage layer: records, the durable SQLite store, the on-device cache and
the fallback layer that joins them.
"""
