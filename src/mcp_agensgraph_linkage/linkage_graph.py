import logging
import random
import time
import uuid
from typing import Any, Dict, List, Optional

from .linkage import SINGLE_INSERT_FANOUT, LinkageEngine
from .models import (
    TRANSACTION_LABEL,
    USER_LABEL,
    NeighborhoodGraph,
    Transaction,
    TransactionPayload,
    User,
    UserPayload,
)
from .neighborhood import NeighborhoodAssembler

logger = logging.getLogger("mcp_agensgraph_linkage")
logger.setLevel(logging.INFO)


def now_millis() -> int:
    return int(time.time() * 1000)


def generate_user_id() -> str:
    return f"user-{now_millis()}-{random.randrange(10000)}"


class LinkageGraph:
    """Users, transactions and their inferred linkage, backed by a graph store.

    The store is injected so the same logic runs against AgensGraph or any
    object offering the same query surface.
    """

    def __init__(
        self,
        store,
        fanout_limit: int = SINGLE_INSERT_FANOUT,
        linkage: Optional[LinkageEngine] = None,
    ):
        self.store = store
        self.linkage = linkage or LinkageEngine(store, fanout_limit)
        self.assembler = NeighborhoodAssembler(store)

    async def upsert_user(self, payload: UserPayload) -> User:
        """Create or update a user, then link it to users sharing an email, phone or address."""
        user_id = payload.id or payload.userId or generate_user_id()
        logger.info(f"Upserting user {user_id}")

        properties = {
            "id": user_id,
            "name": payload.name or None,
            "email": payload.email or None,
            "phone": payload.phone or None,
            "address": payload.address or None,
            "paymentMethods": payload.paymentMethods or [],
        }
        previous = await self.store.get_node(USER_LABEL, user_id)
        stored = await self.store.merge_node(USER_LABEL, user_id, properties)
        user = User.model_validate(stored or properties)

        await self.linkage.link_user(user, previous=previous)
        return user

    async def create_transaction(self, payload: TransactionPayload) -> Optional[Transaction]:
        """Create a transaction, attach its sender/receiver and link it by IP and device.

        Sender and receiver edges are only created for users that already
        exist. The node and those edges commit together; the linkage pass runs
        afterwards as separate calls.
        """
        tx_id = payload.id or str(uuid.uuid4())
        properties = {
            "id": tx_id,
            "amount": payload.amount if payload.amount is not None else 0,
            "timestamp": payload.timestamp if payload.timestamp is not None else now_millis(),
            "ip": payload.ip or None,
            "deviceId": payload.deviceId or None,
            "metadata": payload.metadata or {},
        }
        logger.info(f"Creating transaction {tx_id}")

        stored = await self.store.merge_transaction(
            tx_id,
            properties,
            sender_id=payload.senderId or None,
            receiver_id=payload.receiverId or None,
        )
        transaction = Transaction.model_validate(stored or properties)

        await self.linkage.link_transaction(transaction)

        current = await self.store.get_node(TRANSACTION_LABEL, tx_id)
        return Transaction.model_validate(current) if current else None

    async def list_users(self, limit: int = 100, skip: int = 0) -> List[Dict[str, Any]]:
        logger.info(f"Listing users (limit={limit}, skip={skip})")
        return await self.store.list_nodes(USER_LABEL, order_by="id", skip=skip, limit=limit)

    async def list_transactions(self, limit: int = 100, skip: int = 0) -> List[Dict[str, Any]]:
        """Newest transactions first."""
        logger.info(f"Listing transactions (limit={limit}, skip={skip})")
        return await self.store.list_nodes(
            TRANSACTION_LABEL, order_by="timestamp", descending=True, skip=skip, limit=limit
        )

    async def count_transactions(self) -> int:
        return await self.store.count_nodes(TRANSACTION_LABEL)

    async def export_transactions(self) -> List[Dict[str, Any]]:
        logger.info("Exporting all transactions")
        return await self.store.list_nodes(TRANSACTION_LABEL, order_by="timestamp", descending=True)

    async def get_user_graph(self, user_id: str) -> NeighborhoodGraph:
        logger.info(f"Assembling neighborhood of user {user_id}")
        graph = await self.assembler.user_neighborhood(user_id)
        logger.info(f"User {user_id}: {len(graph.nodes)} nodes, {len(graph.relationships)} relationships")
        return graph

    async def get_transaction_graph(self, tx_id: str) -> NeighborhoodGraph:
        logger.info(f"Assembling neighborhood of transaction {tx_id}")
        graph = await self.assembler.transaction_neighborhood(tx_id)
        logger.info(f"Transaction {tx_id}: {len(graph.nodes)} nodes, {len(graph.relationships)} relationships")
        return graph
