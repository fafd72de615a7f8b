import logging
from typing import Any, Dict, Iterable, List

from .models import (
    TRANSACTION_LABEL,
    USER_LABEL,
    VIEW_DIRECT,
    VIEW_LINKED,
    VIEW_RECEIVED_BY,
    VIEW_SENT,
    VIEW_SENT_RECEIVED,
    VIEW_SHARED_ATTRIBUTE,
    GraphEdge,
    GraphNode,
    NeighborhoodGraph,
    TransactionNeighborhood,
    UserNeighborhood,
)

logger = logging.getLogger("mcp_agensgraph_linkage")
logger.setLevel(logging.INFO)


def user_node(props: Dict[str, Any]) -> GraphNode:
    return GraphNode(id=f"user-{props['id']}", label=str(props["id"]), type=USER_LABEL, props=props)


def transaction_node(props: Dict[str, Any]) -> GraphNode:
    return GraphNode(id=f"tx-{props['id']}", label=str(props["id"]), type=TRANSACTION_LABEL, props=props)


def dedupe_nodes(nodes: Iterable[GraphNode]) -> List[GraphNode]:
    """Keep one node per id. A later node replaces an earlier one in place."""
    by_id: Dict[str, GraphNode] = {}
    for node in nodes:
        by_id[node.id] = node
    return list(by_id.values())


class NeighborhoodAssembler:
    """Renders the subgraph around a seed user or transaction for display."""

    def __init__(self, store):
        self.store = store

    async def user_neighborhood(self, user_id: str) -> NeighborhoodGraph:
        """Transactions of a user, their counterparties and users sharing an attribute.

        Edges are typed `SENT/RECEIVED` (user to transaction), `DIRECT` (user to
        counterparty) and `SHARED_ATTRIBUTE` (user to user). An unknown user
        yields an empty graph.
        """
        raw = await self.store.fetch_neighborhood(USER_LABEL, user_id)
        if raw is None:
            logger.info(f"User {user_id} not found, returning empty graph")
            return NeighborhoodGraph()
        return self.render_user(raw)

    async def transaction_neighborhood(self, tx_id: str) -> NeighborhoodGraph:
        """Sender, receiver and linked transactions of a transaction.

        SAME_IP and SAME_DEVICE are both rendered as `LINKED`.
        """
        raw = await self.store.fetch_neighborhood(TRANSACTION_LABEL, tx_id)
        if raw is None:
            logger.info(f"Transaction {tx_id} not found, returning empty graph")
            return NeighborhoodGraph()
        return self.render_transaction(raw)

    @staticmethod
    def render_user(raw: UserNeighborhood) -> NeighborhoodGraph:
        seed = user_node(raw.user)
        nodes = [seed]
        relationships = []

        for tx in raw.transactions:
            node = transaction_node(tx)
            nodes.append(node)
            relationships.append(GraphEdge(from_=seed.id, to=node.id, type=VIEW_SENT_RECEIVED))

        for other in raw.counterparties:
            node = user_node(other)
            if node.id == seed.id:
                continue
            nodes.append(node)
            relationships.append(GraphEdge(from_=seed.id, to=node.id, type=VIEW_DIRECT))

        for other in raw.shared_users:
            node = user_node(other)
            if node.id == seed.id:
                continue
            nodes.append(node)
            relationships.append(GraphEdge(from_=seed.id, to=node.id, type=VIEW_SHARED_ATTRIBUTE))

        return NeighborhoodGraph(nodes=dedupe_nodes(nodes), relationships=relationships)

    @staticmethod
    def render_transaction(raw: TransactionNeighborhood) -> NeighborhoodGraph:
        seed = transaction_node(raw.transaction)
        nodes = [seed]
        relationships = []

        for sender in raw.senders:
            node = user_node(sender)
            nodes.append(node)
            relationships.append(GraphEdge(from_=node.id, to=seed.id, type=VIEW_SENT))

        for receiver in raw.receivers:
            node = user_node(receiver)
            nodes.append(node)
            relationships.append(GraphEdge(from_=seed.id, to=node.id, type=VIEW_RECEIVED_BY))

        for other in raw.linked:
            node = transaction_node(other)
            if node.id == seed.id:
                continue
            nodes.append(node)
            relationships.append(GraphEdge(from_=seed.id, to=node.id, type=VIEW_LINKED))

        return NeighborhoodGraph(nodes=dedupe_nodes(nodes), relationships=relationships)
