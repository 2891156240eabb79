"""Service layer for nodepipe operations.

Pipeline plane:
- nodes: Node CRUD and edges
- ingest: Bulk JSONL ingestion into Archive nodes

Completion plane:
- experiments: Variants, scenarios, cells and evaluations
"""

from nodepipe.services import experiments, ingest, nodes

__all__ = [
    "experiments",
    "ingest",
    "nodes",
]
