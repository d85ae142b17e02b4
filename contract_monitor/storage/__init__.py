"""
Storage layer.

Redis holds an optional write-behind audit copy of samples and rankings.
The monitor never reads it back.
"""

from contract_monitor.storage.redis_state import RedisAuditStore

__all__ = ["RedisAuditStore"]
