from typing import Any, Dict, List, Optional

import pytest

from mcp_agensgraph_linkage.linkage_graph import LinkageGraph
from mcp_agensgraph_linkage.models import (
    RECEIVED_BY,
    SENT,
    TRANSACTION_LABEL,
    USER_LABEL,
    TransactionNeighborhood,
    UserNeighborhood,
)


class InMemoryGraphStore:
    """Dictionary-backed stand-in for AgensGraphStore with the same query surface."""

    def __init__(self):
        self.nodes: Dict[str, Dict[str, Dict[str, Any]]] = {USER_LABEL: {}, TRANSACTION_LABEL: {}}
        self.edges: List[tuple] = []
        self.find_calls: List[tuple] = []

    def add_edge(self, from_label, from_id, edge_type, to_label, to_id):
        if from_id not in self.nodes[from_label] or to_id not in self.nodes[to_label]:
            return
        key = (from_label, from_id, edge_type, to_label, to_id)
        if key not in self.edges:
            self.edges.append(key)

    def edges_of_type(self, edge_type: str) -> List[tuple]:
        return [(e[1], e[4]) for e in self.edges if e[2] == edge_type]

    async def merge_node(self, label, node_id, properties):
        node = self.nodes[label].setdefault(node_id, {"id": node_id})
        node.update(properties)
        return dict(node)

    async def merge_transaction(self, node_id, properties, sender_id=None, receiver_id=None):
        stored = await self.merge_node(TRANSACTION_LABEL, node_id, properties)
        if sender_id:
            self.add_edge(USER_LABEL, sender_id, SENT, TRANSACTION_LABEL, node_id)
        if receiver_id:
            self.add_edge(TRANSACTION_LABEL, node_id, RECEIVED_BY, USER_LABEL, receiver_id)
        return stored

    async def merge_directed_edge(self, from_label, from_id, edge_type, to_label, to_id):
        if from_label == to_label and from_id == to_id:
            return
        self.add_edge(from_label, from_id, edge_type, to_label, to_id)

    async def delete_edges(self, label, node_id, edge_type):
        self.edges = [
            e
            for e in self.edges
            if not (e[2] == edge_type and ((e[0], e[1]) == (label, node_id) or (e[3], e[4]) == (label, node_id)))
        ]

    async def find_by_attribute(self, label, attribute, value, exclude_id, limit):
        self.find_calls.append((label, attribute, value, exclude_id, limit))
        matches = [
            dict(n)
            for n in self.nodes[label].values()
            if n.get(attribute) == value and n["id"] != exclude_id
        ]
        matches.sort(key=lambda n: n["id"])
        if label == TRANSACTION_LABEL:
            matches.sort(key=lambda n: n.get("timestamp") or 0, reverse=True)
        return matches[:limit]

    async def get_node(self, label, node_id) -> Optional[Dict[str, Any]]:
        node = self.nodes[label].get(node_id)
        return dict(node) if node else None

    async def list_nodes(self, label, order_by="id", descending=False, skip=0, limit=None):
        nodes = sorted(self.nodes[label].values(), key=lambda n: n.get(order_by), reverse=descending)
        end = None if limit is None else skip + limit
        return [dict(n) for n in nodes[skip:end]]

    async def count_nodes(self, label):
        return len(self.nodes[label])

    def _neighbors(self, label, node_id, other_label):
        found = []
        for from_label, from_id, _, to_label, to_id in self.edges:
            if (from_label, from_id) == (label, node_id) and to_label == other_label:
                found.append(to_id)
            elif (to_label, to_id) == (label, node_id) and from_label == other_label:
                found.append(from_id)
        return list(dict.fromkeys(found))

    async def fetch_neighborhood(self, seed_label, seed_id):
        seed = self.nodes[seed_label].get(seed_id)
        if seed is None:
            return None

        if seed_label == USER_LABEL:
            tx_ids = self._neighbors(USER_LABEL, seed_id, TRANSACTION_LABEL)
            counterparties = []
            for tx_id in tx_ids:
                counterparties += self._neighbors(TRANSACTION_LABEL, tx_id, USER_LABEL)
            counterparties = [u for u in dict.fromkeys(counterparties) if u != seed_id]
            shared = [u for u in self._neighbors(USER_LABEL, seed_id, USER_LABEL) if u != seed_id]
            return UserNeighborhood(
                user=dict(seed),
                transactions=[dict(self.nodes[TRANSACTION_LABEL][t]) for t in tx_ids],
                counterparties=[dict(self.nodes[USER_LABEL][u]) for u in counterparties],
                shared_users=[dict(self.nodes[USER_LABEL][u]) for u in shared],
            )

        senders = [e[1] for e in self.edges if e[2] == SENT and e[4] == seed_id]
        receivers = [e[4] for e in self.edges if e[2] == RECEIVED_BY and e[1] == seed_id]
        linked = [t for t in self._neighbors(TRANSACTION_LABEL, seed_id, TRANSACTION_LABEL) if t != seed_id]
        return TransactionNeighborhood(
            transaction=dict(seed),
            senders=[dict(self.nodes[USER_LABEL][u]) for u in senders],
            receivers=[dict(self.nodes[USER_LABEL][u]) for u in receivers],
            linked=[dict(self.nodes[TRANSACTION_LABEL][t]) for t in linked],
        )


@pytest.fixture
def store():
    """Empty in-memory graph store."""
    return InMemoryGraphStore()


@pytest.fixture
def graph(store):
    """LinkageGraph over the in-memory store with the default fan-out limit."""
    return LinkageGraph(store)
