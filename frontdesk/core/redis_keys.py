"""Frontdesk – Tenant-scoped cache key factory.

All cache keys MUST go through this module to ensure tenant isolation.
No key may be stored without a tenant prefix.

Key schema:
    t{tenant_id}:{domain}:{identifier}

Examples:
    tacme-hvac:route:v3f2c9e0b17a4d5c86e21:voice:9f86d081884c7d65...
    tacme-hvac:learning
"""


def redis_key(tenant_id: int | str, *parts: str | int) -> str:
    """Build a tenant-scoped key.

    Args:
        tenant_id: Tenant identifier. Will be prefixed as 't{id}'.
        *parts:    Key path segments joined with ':'.

    Returns:
        Fully-qualified key string like 't7:route:v3:voice:abc'.
    """
    if not parts:
        raise ValueError("redis_key requires at least one path part")
    return f"t{tenant_id}:" + ":".join(str(p) for p in parts)


def route_decision_key(tenant_id: int | str, pool_tag: int | str, channel: str, utterance_hash: str) -> str:
    return redis_key(tenant_id, "route", f"v{pool_tag}", channel, utterance_hash)


def route_decision_pattern(tenant_id: int | str) -> str:
    """Glob pattern matching every cached routing decision of a tenant."""
    return redis_key(tenant_id, "route", "*")


def learning_queue_key(tenant_id: int | str) -> str:
    return redis_key(tenant_id, "learning")
