import json
import logging
import sys
from typing import Literal

from psycopg_pool import AsyncConnectionPool
from pydantic import Field
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from fastmcp.server import FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.tools.tool import ToolResult
from mcp.types import TextContent
from mcp.types import ToolAnnotations

from .linkage import SINGLE_INSERT_FANOUT
from .linkage_graph import LinkageGraph
from .models import TransactionPayload, UserPayload
from .store import AgensGraphStore
from .utils import build_connection_url, format_namespace

# Set up logging
logger = logging.getLogger('mcp_agensgraph_linkage')
logger.setLevel(logging.INFO)


def _annotations(title: str, read_only: bool) -> ToolAnnotations:
    return ToolAnnotations(title=title,
                           readOnlyHint=read_only,
                           destructiveHint=False,
                           idempotentHint=True,
                           openWorldHint=True)


def create_mcp_server(graph: LinkageGraph, namespace: str = "") -> FastMCP:
    """Create an MCP server instance exposing the linkage graph."""

    namespace_prefix = format_namespace(namespace)
    mcp: FastMCP = FastMCP("mcp-agensgraph-linkage")

    @mcp.tool(name=namespace_prefix + "upsert_user",
              annotations=_annotations("Upsert User", read_only=False))
    async def upsert_user(user: UserPayload = Field(..., description="User fields; id is generated when absent")) -> ToolResult:
        """Create or update a user node.

        Existing users with the same id are updated in place, never duplicated. The user is then
        linked to other users sharing its email, phone or address.

        Example call:
        {
            "user": {
                "id": "user-1",
                "name": "User 1",
                "email": "shared@example.com",
                "phone": "9990000001",
                "address": "Address 1",
                "paymentMethods": ["card", "upi"]
            }
        }
        """
        logger.info("MCP tool: upsert_user")
        try:
            result = await graph.upsert_user(UserPayload.model_validate(user))
            return ToolResult(content=[TextContent(type="text", text=result.model_dump_json())],
                              structured_content=result.model_dump())
        except Exception as e:
            logger.error(f"Error upserting user: {e}")
            raise ToolError(f"Error upserting user: {e}")

    @mcp.tool(name=namespace_prefix + "create_transaction",
              annotations=_annotations("Create Transaction", read_only=False))
    async def create_transaction(transaction: TransactionPayload = Field(..., description="Transaction fields with optional sender and receiver ids")) -> ToolResult:
        """Create a transaction and link it to earlier transactions sharing its IP or device.

        SENT and RECEIVED_BY edges are added for the sender and receiver when those users exist;
        unknown users are skipped. At most a fixed number of SAME_IP and SAME_DEVICE edges are
        created per transaction.

        Example call:
        {
            "transaction": {
                "amount": 250,
                "senderId": "user-1",
                "receiverId": "user-2",
                "ip": "10.0.0.1",
                "deviceId": "device-1"
            }
        }
        """
        logger.info("MCP tool: create_transaction")
        try:
            result = await graph.create_transaction(TransactionPayload.model_validate(transaction))
            payload = result.model_dump() if result else None
            return ToolResult(content=[TextContent(type="text", text=json.dumps(payload))],
                              structured_content={"result": payload})
        except Exception as e:
            logger.error(f"Error creating transaction: {e}")
            raise ToolError(f"Error creating transaction: {e}")

    @mcp.tool(name=namespace_prefix + "list_users",
              annotations=_annotations("List Users", read_only=True))
    async def list_users(limit: int = Field(100, ge=1, le=1000, description="Page size"),
                         skip: int = Field(0, ge=0, description="Number of users to skip")) -> ToolResult:
        """List users ordered by id."""
        logger.info(f"MCP tool: list_users (limit={limit}, skip={skip})")
        try:
            result = await graph.list_users(limit=limit, skip=skip)
            return ToolResult(content=[TextContent(type="text", text=json.dumps(result))],
                              structured_content={"result": result})
        except Exception as e:
            logger.error(f"Error listing users: {e}")
            raise ToolError(f"Error listing users: {e}")

    @mcp.tool(name=namespace_prefix + "list_transactions",
              annotations=_annotations("List Transactions", read_only=True))
    async def list_transactions(limit: int = Field(100, ge=1, le=1000, description="Page size"),
                                skip: int = Field(0, ge=0, description="Number of transactions to skip")) -> ToolResult:
        """List transactions, newest first."""
        logger.info(f"MCP tool: list_transactions (limit={limit}, skip={skip})")
        try:
            result = await graph.list_transactions(limit=limit, skip=skip)
            return ToolResult(content=[TextContent(type="text", text=json.dumps(result))],
                              structured_content={"result": result})
        except Exception as e:
            logger.error(f"Error listing transactions: {e}")
            raise ToolError(f"Error listing transactions: {e}")

    @mcp.tool(name=namespace_prefix + "count_transactions",
              annotations=_annotations("Count Transactions", read_only=True))
    async def count_transactions() -> ToolResult:
        """Return the total number of transactions."""
        logger.info("MCP tool: count_transactions")
        try:
            count = await graph.count_transactions()
            return ToolResult(content=[TextContent(type="text", text=json.dumps({"count": count}))],
                              structured_content={"count": count})
        except Exception as e:
            logger.error(f"Error counting transactions: {e}")
            raise ToolError(f"Error counting transactions: {e}")

    @mcp.tool(name=namespace_prefix + "export_transactions",
              annotations=_annotations("Export Transactions", read_only=True))
    async def export_transactions() -> ToolResult:
        """Export every transaction as a JSON array of property maps."""
        logger.info("MCP tool: export_transactions")
        try:
            result = await graph.export_transactions()
            return ToolResult(content=[TextContent(type="text", text=json.dumps(result))],
                              structured_content={"result": result})
        except Exception as e:
            logger.error(f"Error exporting transactions: {e}")
            raise ToolError(f"Error exporting transactions: {e}")

    @mcp.tool(name=namespace_prefix + "get_user_graph",
              annotations=_annotations("Get User Graph", read_only=True))
    async def get_user_graph(userId: str = Field(..., description="Id of the seed user")) -> ToolResult:
        """Return the neighborhood of a user as nodes and relationships.

        Relationship types: SENT/RECEIVED (user to its transactions), DIRECT (user to the other party
        of those transactions) and SHARED_ATTRIBUTE (users sharing an email, phone or address).
        An unknown user returns an empty graph.

        Example response:
        {
            "nodes": [
                {"id": "user-u1", "label": "u1", "type": "User", "props": {"id": "u1"}},
                {"id": "tx-t1", "label": "t1", "type": "Transaction", "props": {"id": "t1"}}
            ],
            "relationships": [
                {"from": "user-u1", "to": "tx-t1", "type": "SENT/RECEIVED"}
            ]
        }
        """
        logger.info(f"MCP tool: get_user_graph ('{userId}')")
        try:
            result = await graph.get_user_graph(userId)
            return ToolResult(content=[TextContent(type="text", text=result.model_dump_json(by_alias=True))],
                              structured_content=result.model_dump(by_alias=True))
        except Exception as e:
            logger.error(f"Error fetching user relationships: {e}")
            raise ToolError(f"Error fetching user relationships: {e}")

    @mcp.tool(name=namespace_prefix + "get_transaction_graph",
              annotations=_annotations("Get Transaction Graph", read_only=True))
    async def get_transaction_graph(transactionId: str = Field(..., description="Id of the seed transaction")) -> ToolResult:
        """Return the neighborhood of a transaction as nodes and relationships.

        Relationship types: SENT, RECEIVED_BY and LINKED (transactions sharing an IP or device,
        in either direction). An unknown transaction returns an empty graph.
        """
        logger.info(f"MCP tool: get_transaction_graph ('{transactionId}')")
        try:
            result = await graph.get_transaction_graph(transactionId)
            return ToolResult(content=[TextContent(type="text", text=result.model_dump_json(by_alias=True))],
                              structured_content=result.model_dump(by_alias=True))
        except Exception as e:
            logger.error(f"Error fetching transaction relationships: {e}")
            raise ToolError(f"Error fetching transaction relationships: {e}")

    return mcp


async def main(
    agensgraph_url: str,
    agensgraph_user: str,
    agensgraph_password: str,
    agensgraph_database: str,
    agensgraph_graphname: str,
    transport: Literal["stdio", "sse", "http"] = "stdio",
    namespace: str = "",
    host: str = "127.0.0.1",
    port: int = 8000,
    path: str = "/mcp/",
    allow_origins: list[str] = [],
    allowed_hosts: list[str] = [],
    fanout_limit: int = SINGLE_INSERT_FANOUT,
) -> None:
    logger.info("Starting AgensGraph MCP Linkage Server")
    logger.info(f"Connecting to AgensGraph with URL: {agensgraph_url}")

    db_url = build_connection_url(agensgraph_url, agensgraph_user, agensgraph_password, agensgraph_database)
    connection_pool = AsyncConnectionPool(db_url, open=False)

    try:
        await connection_pool.open()
        logger.info("Connected to AgensGraph successfully")
    except Exception as e:
        logger.error(f"Failed to connect to AgensGraph: {e}")
        sys.exit(1)

    try:
        store = AgensGraphStore(connection_pool, agensgraph_graphname)
        try:
            await store.ensure_schema()
        except Exception as e:
            logger.error(f"Failed to create graph: {e}")
            sys.exit(1)

        graph = LinkageGraph(store, fanout_limit=fanout_limit)
        logger.info(f"LinkageGraph initialized (fan-out limit {fanout_limit})")

        custom_middleware = [
            Middleware(
                CORSMiddleware,
                allow_origins=allow_origins,
                allow_methods=["GET", "POST"],
                allow_headers=["*"],
            ),
            Middleware(TrustedHostMiddleware,
                       allowed_hosts=allowed_hosts)
        ]

        mcp = create_mcp_server(graph, namespace)
        logger.info("MCP server created")

        logger.info(f"Starting server with transport: {transport}")
        match transport:
            case "http":
                logger.info(f"HTTP server starting on {host}:{port}{path}")
                await mcp.run_http_async(host=host, port=port, path=path, middleware=custom_middleware, stateless_http=True)
            case "stdio":
                logger.info("STDIO server starting")
                await mcp.run_stdio_async()
            case "sse":
                logger.info(f"SSE server starting on {host}:{port}{path}")
                await mcp.run_http_async(host=host, port=port, path=path, middleware=custom_middleware, transport="sse")
            case _:
                raise ValueError(f"Unsupported transport: {transport}")
    finally:
        await connection_pool.close()
