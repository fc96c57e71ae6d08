"""Policy Store - cached LinkPolicy lookup by slug and custom domain."""
from .store import PolicyStore, PolicyCache, get_policy_cache, normalize_host

__all__ = ["PolicyStore", "PolicyCache", "get_policy_cache", "normalize_host"]
