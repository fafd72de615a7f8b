import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .models import (
    SAME_ADDRESS,
    SAME_DEVICE,
    SAME_EMAIL,
    SAME_IP,
    SAME_PHONE,
    TRANSACTION_LABEL,
    USER_LABEL,
    LinkageResult,
    Transaction,
    User,
)

logger = logging.getLogger("mcp_agensgraph_linkage")
logger.setLevel(logging.INFO)

# Per-insert degree caps
SINGLE_INSERT_FANOUT = 50
BULK_INSERT_FANOUT = 20

# (attribute, edge label) pairs linked on insert
TRANSACTION_LINK_RULES: Tuple[Tuple[str, str], ...] = (
    ("ip", SAME_IP),
    ("deviceId", SAME_DEVICE),
)
USER_LINK_RULES: Tuple[Tuple[str, str], ...] = (
    ("email", SAME_EMAIL),
    ("phone", SAME_PHONE),
    ("address", SAME_ADDRESS),
)


class LinkageEngine:
    """Links a freshly written node to existing nodes that share an attribute.

    For each attribute present on the new node, at most `fanout_limit` other
    nodes of the same label with an equal value are selected and an edge is
    merged from the new node to each of them. Edges only ever point from the
    new node to the existing ones; historical nodes are never revisited.

    When more candidates match than the limit allows, the store decides which
    are kept (most recent transactions first, users by id). Callers must not
    rely on that choice.
    """

    def __init__(self, store, fanout_limit: int = SINGLE_INSERT_FANOUT):
        if fanout_limit < 1:
            raise ValueError(f"fanout_limit must be positive, got {fanout_limit}")
        self.store = store
        self.fanout_limit = fanout_limit

    async def link(
        self,
        label: str,
        node_id: str,
        properties: Dict[str, Any],
        rules: Sequence[Tuple[str, str]],
    ) -> LinkageResult:
        result = LinkageResult(node_id=node_id)

        for attribute, edge_type in rules:
            value = properties.get(attribute)
            if not value:
                continue

            candidates = await self.store.find_by_attribute(
                label, attribute, value, exclude_id=node_id, limit=self.fanout_limit
            )
            merged = 0
            for candidate in candidates[: self.fanout_limit]:
                if candidate.get("id") == node_id:
                    continue
                await self.store.merge_directed_edge(
                    label, node_id, edge_type, label, candidate["id"]
                )
                merged += 1

            result.edges[edge_type] = merged
            if merged:
                logger.info(f"Linked {label} {node_id} to {merged} nodes via {edge_type}")

        return result

    async def link_transaction(self, transaction: Transaction) -> LinkageResult:
        """Create SAME_IP / SAME_DEVICE edges for a committed transaction."""
        return await self.link(
            TRANSACTION_LABEL,
            transaction.id,
            transaction.model_dump(),
            TRANSACTION_LINK_RULES,
        )

    async def unlink_changed(
        self,
        label: str,
        node_id: str,
        previous: Dict[str, Any],
        current: Dict[str, Any],
        rules: Sequence[Tuple[str, str]],
    ) -> List[str]:
        """Drop the edges of every rule whose attribute value differs between two versions of a node.

        Edges are removed in both directions, so links other nodes made to the
        old value go as well. Returns the edge types that were dropped.
        """
        dropped = []
        for attribute, edge_type in rules:
            if previous.get(attribute) == current.get(attribute):
                continue
            await self.store.delete_edges(label, node_id, edge_type)
            dropped.append(edge_type)

        if dropped:
            logger.info(f"Dropped stale {', '.join(dropped)} edges of {label} {node_id}")
        return dropped

    async def link_user(self, user: User, previous: Optional[Dict[str, Any]] = None) -> LinkageResult:
        """Create SAME_EMAIL / SAME_PHONE / SAME_ADDRESS edges for a committed user.

        When `previous` holds the user's properties before this write, edges
        for attributes that changed are dropped before linking again.
        """
        properties = user.model_dump()
        if previous:
            await self.unlink_changed(USER_LABEL, user.id, previous, properties, USER_LINK_RULES)
        return await self.link(USER_LABEL, user.id, properties, USER_LINK_RULES)
