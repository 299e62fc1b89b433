from .kv_store import KeyValueStore, OracleKeyValueStore, now_ms
from .memory_store import InMemoryKeyValueStore

__all__ = ["KeyValueStore", "OracleKeyValueStore", "InMemoryKeyValueStore", "now_ms"]
