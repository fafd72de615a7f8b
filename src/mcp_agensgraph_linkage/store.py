import json
import logging
import re
from typing import Any, Dict, List, Optional, Pattern

import psycopg
from psycopg import AsyncConnection
from psycopg.rows import namedtuple_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from .models import (
    EDGE_LABELS,
    RECEIVED_BY,
    SENT,
    TRANSACTION_LABEL,
    USER_LABEL,
    VERTEX_LABELS,
    Neighborhood,
    TransactionNeighborhood,
    UserNeighborhood,
)

logger = logging.getLogger("mcp_agensgraph_linkage")
logger.setLevel(logging.INFO)

# Properties that get a property index, per vertex label
INDEXED_PROPERTIES = {
    USER_LABEL: ("id", "email", "phone", "address"),
    TRANSACTION_LABEL: ("id", "ip", "deviceId", "timestamp"),
}

# Candidate order when more matches exist than the fan-out limit allows
SELECTION_ORDER = {
    USER_LABEL: "n.id",
    TRANSACTION_LABEL: "n.timestamp DESC, n.id",
}

_identifier_regex: Pattern = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_vertex_regex: Pattern = re.compile(r"\"?(\w+)\"?\[(\d+\.\d+)\](\{.*\})", re.DOTALL)


class GraphStoreError(Exception):
    """Raised when a query against AgensGraph fails."""

    def __init__(self, message: str, detail: Optional[str] = None) -> None:
        self.message = message
        self.detail = detail
        super().__init__(f"{message}: {detail}" if detail else message)


def get_pool_connection(pool: AsyncConnectionPool):
    """Context manager for getting a connection from the pool."""
    return pool.connection()


def _check_label(label: str, allowed) -> str:
    if label not in allowed:
        raise ValueError(f"Unknown graph label: {label}")
    return label


def _check_property(name: str) -> str:
    if not _identifier_regex.match(name):
        raise ValueError(f"Invalid property name: {name}")
    return name


def vertex_properties(value: Any) -> Dict[str, Any]:
    """Return the property map of a vertex column.

    AgensGraph renders vertices as `label[graph.id]{properties}`; values that
    already arrive decoded are passed through.
    """
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        vertex = _vertex_regex.match(value)
        if vertex:
            return json.loads(vertex.group(3))
    raise ValueError(f"Unexpected vertex value: {value!r}")


class AgensGraphStore:
    """Property-graph access for users and transactions stored in AgensGraph.

    Every public method runs on its own pooled connection and commits once, so
    each call is one store transaction.
    """

    def __init__(self, connection_pool: AsyncConnectionPool, graphname: str):
        self.pool = connection_pool
        self.graphname = graphname

    async def _execute_cypher(
        self, conn: AsyncConnection, cypher_query: str, params: dict = None
    ) -> List[Any]:
        """Execute a Cypher query within AgensGraph."""
        async with conn.cursor(row_factory=namedtuple_row) as cursor:
            await cursor.execute(f"SET graph_path = {self.graphname}")
            await cursor.execute(cypher_query, params)

            # statements without a result set (MERGE, SET) have no description
            if cursor.description is None:
                return []
            return await cursor.fetchall()

    async def _run(self, action: str, statements: List[tuple]) -> List[List[Any]]:
        """Run statements on one connection and commit them together.

        Returns the rows of each statement in order. Driver failures roll back
        the transaction and are raised as `GraphStoreError`.
        """
        async with get_pool_connection(self.pool) as conn:
            try:
                results = []
                for query, params in statements:
                    results.append(await self._execute_cypher(conn, query, params))
                await conn.commit()
                return results
            except psycopg.Error as e:
                await conn.rollback()
                logger.error(f"Graph query failed while {action}: {e}")
                raise GraphStoreError(f"Error {action}", str(e)) from e

    async def ensure_schema(self) -> None:
        """Create the graph, its labels and the property indexes if missing."""
        async with get_pool_connection(self.pool) as conn:
            try:
                async with conn.cursor() as cursor:
                    await cursor.execute(f"CREATE GRAPH IF NOT EXISTS {self.graphname}")
                    await cursor.execute(f"SET graph_path = {self.graphname}")
                    for label in VERTEX_LABELS:
                        await cursor.execute(f'CREATE VLABEL IF NOT EXISTS "{label}"')
                    for label in EDGE_LABELS:
                        await cursor.execute(f'CREATE ELABEL IF NOT EXISTS "{label}"')
                    for label, properties in INDEXED_PROPERTIES.items():
                        for prop in properties:
                            index_name = f"{label.lower()}_{prop.lower()}_idx"
                            await cursor.execute(
                                f'CREATE PROPERTY INDEX IF NOT EXISTS {index_name} ON "{label}" ({prop})'
                            )
                await conn.commit()
            except psycopg.Error as e:
                await conn.rollback()
                raise GraphStoreError(
                    f"Error initializing graph {self.graphname}", str(e)
                ) from e
        logger.info(f"Ensured graph '{self.graphname}' labels and indexes exist")

    async def merge_node(
        self, label: str, node_id: str, properties: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Create or update the vertex `label` with `node_id` and return its properties."""
        _check_label(label, VERTEX_LABELS)
        query, params = self._merge_node_statement(label, node_id, properties)
        [rows] = await self._run(f"merging {label} {node_id}", [(query, params)])
        return vertex_properties(rows[0].n) if rows else {}

    @staticmethod
    def _merge_node_statement(label: str, node_id: str, properties: Dict[str, Any]):
        params = {"id": Jsonb(node_id)}
        assignments = []
        for i, (key, value) in enumerate(properties.items()):
            if key == "id":
                continue
            assignments.append(f"n.{_check_property(key)} = %(p{i})s")
            params[f"p{i}"] = Jsonb(value)

        set_clause = f"SET {', '.join(assignments)}" if assignments else ""
        query = f"""
            MERGE (n:"{label}" {{id: %(id)s}})
            {set_clause}
            RETURN n
        """
        return query, params

    async def merge_transaction(
        self,
        node_id: str,
        properties: Dict[str, Any],
        sender_id: Optional[str] = None,
        receiver_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Upsert a transaction and attach its sender and receiver in one commit.

        Edges to users that do not exist are skipped: the MATCH finds nothing
        and the MERGE never runs.
        """
        statements = [self._merge_node_statement(TRANSACTION_LABEL, node_id, properties)]
        if sender_id:
            statements.append(
                self._merge_edge_statement(USER_LABEL, sender_id, SENT, TRANSACTION_LABEL, node_id)
            )
        if receiver_id:
            statements.append(
                self._merge_edge_statement(TRANSACTION_LABEL, node_id, RECEIVED_BY, USER_LABEL, receiver_id)
            )

        results = await self._run(f"creating transaction {node_id}", statements)
        rows = results[0]
        return vertex_properties(rows[0].n) if rows else {}

    @staticmethod
    def _merge_edge_statement(
        from_label: str, from_id: str, edge_type: str, to_label: str, to_id: str
    ):
        _check_label(from_label, VERTEX_LABELS)
        _check_label(to_label, VERTEX_LABELS)
        _check_label(edge_type, EDGE_LABELS)
        query = f"""
            MATCH (fromNode:"{from_label}"), (toNode:"{to_label}")
            WHERE fromNode.id = %(from_id)s AND toNode.id = %(to_id)s
            MERGE (fromNode)-[r:"{edge_type}"]->(toNode)
        """
        return query, {"from_id": Jsonb(from_id), "to_id": Jsonb(to_id)}

    async def merge_directed_edge(
        self, from_label: str, from_id: str, edge_type: str, to_label: str, to_id: str
    ) -> None:
        """Idempotently create `(from)-[edge_type]->(to)` when both endpoints exist."""
        if from_label == to_label and from_id == to_id:
            logger.debug(f"Skipping {edge_type} self-loop on {from_label} {from_id}")
            return
        statement = self._merge_edge_statement(from_label, from_id, edge_type, to_label, to_id)
        await self._run(f"merging {edge_type} edge {from_id} -> {to_id}", [statement])

    async def delete_edges(self, label: str, node_id: str, edge_type: str) -> None:
        """Remove every `edge_type` edge touching the node, in either direction."""
        _check_label(label, VERTEX_LABELS)
        _check_label(edge_type, EDGE_LABELS)
        query = f'MATCH (n:"{label}" {{id: %(id)s}})-[r:"{edge_type}"]-() DELETE r'
        await self._run(
            f"deleting {edge_type} edges of {label} {node_id}", [(query, {"id": Jsonb(node_id)})]
        )

    async def find_by_attribute(
        self, label: str, attribute: str, value: Any, exclude_id: str, limit: int
    ) -> List[Dict[str, Any]]:
        """Return up to `limit` vertices whose `attribute` equals `value`, excluding `exclude_id`."""
        _check_label(label, VERTEX_LABELS)
        _check_property(attribute)
        query = f"""
            MATCH (n:"{label}")
            WHERE n.{attribute} = %(value)s AND n.id <> %(exclude_id)s
            RETURN n
            ORDER BY {SELECTION_ORDER[label]}
            LIMIT {int(limit)}
        """
        [rows] = await self._run(
            f"finding {label} by {attribute}",
            [(query, {"value": Jsonb(value), "exclude_id": Jsonb(exclude_id)})],
        )
        return [vertex_properties(row.n) for row in rows]

    async def get_node(self, label: str, node_id: str) -> Optional[Dict[str, Any]]:
        _check_label(label, VERTEX_LABELS)
        query = f'MATCH (n:"{label}" {{id: %(id)s}}) RETURN n'
        [rows] = await self._run(f"reading {label} {node_id}", [(query, {"id": Jsonb(node_id)})])
        return vertex_properties(rows[0].n) if rows else None

    async def list_nodes(
        self,
        label: str,
        order_by: str = "id",
        descending: bool = False,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Page through vertices of `label`. Without a limit every vertex is returned."""
        _check_label(label, VERTEX_LABELS)
        direction = " DESC" if descending else ""
        query = f"""
            MATCH (n:"{label}")
            RETURN n
            ORDER BY n.{_check_property(order_by)}{direction}
            SKIP {int(skip)}
        """
        if limit is not None:
            query += f" LIMIT {int(limit)}"
        [rows] = await self._run(f"listing {label} nodes", [(query, None)])
        return [vertex_properties(row.n) for row in rows]

    async def count_nodes(self, label: str) -> int:
        _check_label(label, VERTEX_LABELS)
        query = f'MATCH (n:"{label}") RETURN count(n) AS total'
        [rows] = await self._run(f"counting {label} nodes", [(query, None)])
        return int(rows[0].total) if rows else 0

    async def fetch_neighborhood(
        self, seed_label: str, seed_id: str
    ) -> Optional[Neighborhood]:
        """Collect the raw vertices around a seed, or None when the seed does not exist.

        Linkage edges are stored new -> existing, so every hop here matches
        edges in either direction.
        """
        _check_label(seed_label, VERTEX_LABELS)
        params = {"id": Jsonb(seed_id)}

        if seed_label == USER_LABEL:
            # only SENT/RECEIVED_BY join users to transactions
            statements = [
                ('MATCH (u:"User" {id: %(id)s}) RETURN u AS n', params),
                (
                    """
                    MATCH (u:"User" {id: %(id)s})-[]-(t:"Transaction")
                    RETURN DISTINCT t AS n
                    """,
                    params,
                ),
                (
                    """
                    MATCH (u:"User" {id: %(id)s})-[]-(:"Transaction")-[]-(o:"User")
                    WHERE o.id <> %(id)s
                    RETURN DISTINCT o AS n
                    """,
                    params,
                ),
                (
                    """
                    MATCH (u:"User" {id: %(id)s})-[]-(o:"User")
                    WHERE o.id <> %(id)s
                    RETURN DISTINCT o AS n
                    """,
                    params,
                ),
            ]
            seed, transactions, counterparties, shared = await self._run(
                f"reading neighborhood of user {seed_id}", statements
            )
            if not seed:
                return None
            return UserNeighborhood(
                user=vertex_properties(seed[0].n),
                transactions=[vertex_properties(r.n) for r in transactions],
                counterparties=[vertex_properties(r.n) for r in counterparties],
                shared_users=[vertex_properties(r.n) for r in shared],
            )

        # only SAME_IP/SAME_DEVICE join two transactions
        statements = [
            ('MATCH (t:"Transaction" {id: %(id)s}) RETURN t AS n', params),
            (
                """
                MATCH (s:"User")-[:"SENT"]->(t:"Transaction" {id: %(id)s})
                RETURN DISTINCT s AS n
                """,
                params,
            ),
            (
                """
                MATCH (t:"Transaction" {id: %(id)s})-[:"RECEIVED_BY"]->(r:"User")
                RETURN DISTINCT r AS n
                """,
                params,
            ),
            (
                """
                MATCH (t:"Transaction" {id: %(id)s})-[]-(o:"Transaction")
                WHERE o.id <> %(id)s
                RETURN DISTINCT o AS n
                """,
                params,
            ),
        ]
        seed, senders, receivers, linked = await self._run(
            f"reading neighborhood of transaction {seed_id}", statements
        )
        if not seed:
            return None
        return TransactionNeighborhood(
            transaction=vertex_properties(seed[0].n),
            senders=[vertex_properties(r.n) for r in senders],
            receivers=[vertex_properties(r.n) for r in receivers],
            linked=[vertex_properties(r.n) for r in linked],
        )
