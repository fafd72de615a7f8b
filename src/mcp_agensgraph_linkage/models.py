from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# Vertex labels
USER_LABEL = "User"
TRANSACTION_LABEL = "Transaction"

# Edge labels
SENT = "SENT"
RECEIVED_BY = "RECEIVED_BY"
SAME_IP = "SAME_IP"
SAME_DEVICE = "SAME_DEVICE"
SAME_EMAIL = "SAME_EMAIL"
SAME_PHONE = "SAME_PHONE"
SAME_ADDRESS = "SAME_ADDRESS"

VERTEX_LABELS = (USER_LABEL, TRANSACTION_LABEL)
EDGE_LABELS = (SENT, RECEIVED_BY, SAME_IP, SAME_DEVICE, SAME_EMAIL, SAME_PHONE, SAME_ADDRESS)

# Edge types of the rendered neighborhood graph
VIEW_SENT_RECEIVED = "SENT/RECEIVED"
VIEW_DIRECT = "DIRECT"
VIEW_SHARED_ATTRIBUTE = "SHARED_ATTRIBUTE"
VIEW_SENT = "SENT"
VIEW_RECEIVED_BY = "RECEIVED_BY"
VIEW_LINKED = "LINKED"


class User(BaseModel):
    """A customer account stored as a `User` vertex.

    Example:
    {
        "id": "user-1",
        "name": "User 1",
        "email": "user1@example.com",
        "phone": "9000000001",
        "address": "Address 1",
        "paymentMethods": ["card", "upi"]
    }
    """

    id: str = Field(description="Unique, stable user identifier", min_length=1)
    name: Optional[str] = Field(default=None, description="Display name")
    email: Optional[str] = Field(default=None, description="Email address")
    phone: Optional[str] = Field(default=None, description="Phone number")
    address: Optional[str] = Field(default=None, description="Postal address")
    paymentMethods: List[str] = Field(
        default=[],
        description="Ordered list of payment instruments",
        examples=[["card"], ["card", "upi"]],
    )


class Transaction(BaseModel):
    """A money transfer stored as a `Transaction` vertex.

    Example:
    {
        "id": "6f1c...",
        "amount": 120.5,
        "timestamp": 1700000000000,
        "ip": "10.0.0.1",
        "deviceId": "device-1",
        "metadata": {"channel": "web"}
    }
    """

    id: str = Field(description="Unique transaction identifier", min_length=1)
    amount: float = Field(default=0, ge=0, description="Non-negative amount")
    timestamp: int = Field(description="Creation time in milliseconds since epoch")
    ip: Optional[str] = Field(default=None, description="Originating IP address")
    deviceId: Optional[str] = Field(default=None, description="Originating device id")
    metadata: Dict[str, Any] = Field(
        default={}, description="Opaque key/value mapping"
    )


class UserPayload(BaseModel):
    """Request to create or update a user.

    The id is taken from `id`, then `userId`, and generated when both are absent.
    """

    id: Optional[str] = Field(default=None, description="User id (optional)")
    userId: Optional[str] = Field(default=None, description="Alternate user id field")
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    paymentMethods: Optional[List[str]] = None


class TransactionPayload(BaseModel):
    """Request to create a transaction between two users.

    Example:
    {
        "amount": 250,
        "senderId": "user-1",
        "receiverId": "user-2",
        "ip": "1.1.1.1",
        "deviceId": "device-9"
    }
    """

    id: Optional[str] = Field(default=None, description="Transaction id (optional, UUID generated when absent)")
    amount: Optional[float] = Field(default=None, ge=0, description="Non-negative amount, defaults to 0")
    timestamp: Optional[int] = Field(default=None, ge=0, description="Milliseconds since epoch, defaults to now")
    senderId: Optional[str] = Field(default=None, description="Id of the sending user")
    receiverId: Optional[str] = Field(default=None, description="Id of the receiving user")
    ip: Optional[str] = None
    deviceId: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class GraphNode(BaseModel):
    """A node of a rendered neighborhood. `id` is namespaced per type."""

    id: str
    label: str
    type: Literal["User", "Transaction"]
    props: Dict[str, Any]


class GraphEdge(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(alias="from")
    to: str
    type: str


class NeighborhoodGraph(BaseModel):
    """Display-ready subgraph around a seed node."""

    nodes: List[GraphNode] = Field(default=[])
    relationships: List[GraphEdge] = Field(default=[])


class UserNeighborhood(BaseModel):
    """Raw traversal result around a seed user."""

    kind: Literal["user"] = "user"
    user: Dict[str, Any]
    transactions: List[Dict[str, Any]] = []
    counterparties: List[Dict[str, Any]] = []
    shared_users: List[Dict[str, Any]] = []


class TransactionNeighborhood(BaseModel):
    """Raw traversal result around a seed transaction."""

    kind: Literal["transaction"] = "transaction"
    transaction: Dict[str, Any]
    senders: List[Dict[str, Any]] = []
    receivers: List[Dict[str, Any]] = []
    linked: List[Dict[str, Any]] = []


Neighborhood = Annotated[
    Union[UserNeighborhood, TransactionNeighborhood], Field(discriminator="kind")
]


class LinkageResult(BaseModel):
    """Number of linkage edges merged per edge type during one pass."""

    node_id: str
    edges: Dict[str, int] = Field(default={})

    @property
    def total(self) -> int:
        return sum(self.edges.values())
