"""fantasy_diary — Escape from Seoul story service.

Provides:
    - JSON-RPC tool gateways over the episode/character/place tables
    - Weather and clock tools for scene grounding
    - Advisory TTL lock with heartbeat renewal
    - Phase-by-phase chapter generation with a deterministic fallback
"""

__version__ = "0.3.0"
