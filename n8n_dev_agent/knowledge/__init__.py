"""Node capability knowledge: an index of n8n node types built from source.

Public surface:
    CapabilityIndex  lazy-loaded snapshot + search / details / schema lookups.
    NodeTypeEntry    everything known about one node type.
    NodeSummary      compact search row.
    OperationSchema  captured output shape for one resource/operation.

Build the snapshot offline with:
    python -m n8n_dev_agent.knowledge.build --corpus .n8n-nodes-cache
"""

from n8n_dev_agent.knowledge.index import CapabilityIndex, credential_instructions
from n8n_dev_agent.knowledge.models import (
    Credential,
    NodeSummary,
    NodeTypeEntry,
    Operation,
    OperationSchema,
    Parameter,
    Resource,
)

__all__ = [
    "CapabilityIndex",
    "Credential",
    "NodeSummary",
    "NodeTypeEntry",
    "Operation",
    "OperationSchema",
    "Parameter",
    "Resource",
    "credential_instructions",
]
