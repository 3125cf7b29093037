"""
Supply Chain Observer

Rebuilds a queryable view of a supply-chain ledger by replaying contract
events in block order.

Subpackages:
- ledger: Ledger collaborators (JSON-RPC node, in-memory ledger)
- indexer: Registry, decoder, projector, store, scanner, query engine
"""

__version__ = "0.4.0"
