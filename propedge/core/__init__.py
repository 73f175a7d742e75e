"""Core mathematics and contracts for the PropEdge decision engine.

This package contains pure, storage-agnostic building blocks:

- ``odds_math``       - odds conversion, DFS payout implied probability, EV flag
- ``kelly``           - capped Kelly staking, risk tiers, portfolio sizing
- ``confidence``      - multi-factor confidence score and proportion statistics
- ``engine_config``   - the engine's tunable business constants
- ``errors``          - the error taxonomy shared by every layer
- ``store_interface`` - DTOs and ABCs for the prop store and market source

Nothing in this package imports from ``propedge.services`` or ``propedge.models``.
All modules are side-effect-free and unit-testable in isolation.
"""
