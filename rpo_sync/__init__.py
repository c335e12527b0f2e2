"""
RPO Sync

Cache-first history storage for job requisitions and candidates:
1. Writes land in Valkey (sorted-set series + category indices)
2. A pending-sync queue tracks what is not yet durable
3. A background worker reconciles queued entities into PostgreSQL
4. PostgreSQL stays the source of truth when the cache is down or evicted
"""

__version__ = "5.0.0"
