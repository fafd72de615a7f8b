from unittest.mock import AsyncMock, call

import pytest

from mcp_agensgraph_linkage.linkage import (
    BULK_INSERT_FANOUT,
    SINGLE_INSERT_FANOUT,
    USER_LINK_RULES,
    LinkageEngine,
)
from mcp_agensgraph_linkage.models import (
    SAME_ADDRESS,
    SAME_DEVICE,
    SAME_EMAIL,
    SAME_IP,
    TRANSACTION_LABEL,
    USER_LABEL,
    Transaction,
    User,
)


def add_transaction(store, tx_id, timestamp=0, **props):
    store.nodes[TRANSACTION_LABEL][tx_id] = {"id": tx_id, "timestamp": timestamp, **props}
    return Transaction.model_validate(store.nodes[TRANSACTION_LABEL][tx_id])


class TestTransactionLinkage:
    """Test SAME_IP / SAME_DEVICE edge creation."""

    @pytest.mark.asyncio
    async def test_fanout_is_capped(self, store):
        """Test that a popular IP produces at most the configured number of edges."""
        for i in range(100):
            add_transaction(store, f"old-{i}", timestamp=i, ip="1.1.1.1")
        new = add_transaction(store, "new", timestamp=1000, ip="1.1.1.1")

        result = await LinkageEngine(store).link_transaction(new)

        assert SINGLE_INSERT_FANOUT == 50
        assert result.edges[SAME_IP] == 50
        assert len(store.edges_of_type(SAME_IP)) == 50

    @pytest.mark.asyncio
    async def test_bulk_fanout_is_capped_at_twenty(self, store):
        """Test the bulk generation cap."""
        for i in range(30):
            add_transaction(store, f"old-{i}", timestamp=i, deviceId="device-1")
        new = add_transaction(store, "new", timestamp=1000, deviceId="device-1")

        result = await LinkageEngine(store, BULK_INSERT_FANOUT).link_transaction(new)

        assert result.edges[SAME_DEVICE] == 20
        assert len(store.edges_of_type(SAME_DEVICE)) == 20

    @pytest.mark.asyncio
    async def test_most_recent_candidates_are_selected(self, store):
        """Test that the newest matching transactions win when over the cap."""
        for i in range(5):
            add_transaction(store, f"old-{i}", timestamp=i, ip="1.1.1.1")
        new = add_transaction(store, "new", timestamp=1000, ip="1.1.1.1")

        await LinkageEngine(store, fanout_limit=2).link_transaction(new)

        assert sorted(store.edges_of_type(SAME_IP)) == [("new", "old-3"), ("new", "old-4")]

    @pytest.mark.asyncio
    async def test_no_self_loop(self, store):
        """Test that a transaction is never linked to itself."""
        new = add_transaction(store, "t1", ip="1.1.1.1", deviceId="d1")

        result = await LinkageEngine(store).link_transaction(new)

        assert result.total == 0
        assert store.edges == []

    @pytest.mark.asyncio
    async def test_self_match_from_store_is_ignored(self, store):
        """Test that a candidate equal to the new id is skipped even if the store returns it."""
        new = add_transaction(store, "t1", ip="1.1.1.1")

        async def leaky_find(*args, **kwargs):
            return [{"id": "t1"}]

        store.find_by_attribute = leaky_find
        result = await LinkageEngine(store).link_transaction(new)

        assert result.edges[SAME_IP] == 0
        assert store.edges == []

    @pytest.mark.asyncio
    async def test_absent_attributes_are_skipped(self, store):
        """Test that null or empty ip/deviceId never queries the store."""
        add_transaction(store, "old", ip=None, deviceId="")
        new = add_transaction(store, "new", ip=None, deviceId="")

        result = await LinkageEngine(store).link_transaction(new)

        assert store.find_calls == []
        assert result.edges == {}

    @pytest.mark.asyncio
    async def test_edges_point_from_new_to_existing(self, store):
        """Test the direction of linkage edges."""
        add_transaction(store, "old", ip="1.1.1.1", deviceId="d1")
        new = add_transaction(store, "new", ip="1.1.1.1", deviceId="d1")

        await LinkageEngine(store).link_transaction(new)

        assert store.edges_of_type(SAME_IP) == [("new", "old")]
        assert store.edges_of_type(SAME_DEVICE) == [("new", "old")]

    @pytest.mark.asyncio
    async def test_relinking_is_idempotent(self, store):
        """Test that running the pass twice does not duplicate edges."""
        add_transaction(store, "old", ip="1.1.1.1")
        new = add_transaction(store, "new", ip="1.1.1.1")
        engine = LinkageEngine(store)

        await engine.link_transaction(new)
        await engine.link_transaction(new)

        assert store.edges_of_type(SAME_IP) == [("new", "old")]

    @pytest.mark.asyncio
    async def test_limit_is_passed_to_store(self, store):
        """Test that the store query itself is bounded."""
        new = add_transaction(store, "new", ip="1.1.1.1")

        await LinkageEngine(store, fanout_limit=7).link_transaction(new)

        assert store.find_calls == [(TRANSACTION_LABEL, "ip", "1.1.1.1", "new", 7)]

    def test_invalid_fanout(self, store):
        """Test that a non-positive fan-out limit is rejected."""
        with pytest.raises(ValueError, match="fanout_limit"):
            LinkageEngine(store, fanout_limit=0)


class TestUserLinkage:
    """Test shared-attribute edges between users."""

    @pytest.mark.asyncio
    async def test_shared_email_links_users(self, store):
        store.nodes[USER_LABEL]["u1"] = {"id": "u1", "email": "a@x.com"}
        store.nodes[USER_LABEL]["u2"] = {"id": "u2", "email": "a@x.com"}

        result = await LinkageEngine(store).link_user(User(id="u2", email="a@x.com"))

        assert result.edges[SAME_EMAIL] == 1
        assert store.edges_of_type(SAME_EMAIL) == [("u2", "u1")]

    @pytest.mark.asyncio
    async def test_only_changed_attributes_are_unlinked(self, store):
        store.delete_edges = AsyncMock()
        engine = LinkageEngine(store)

        dropped = await engine.unlink_changed(
            USER_LABEL,
            "u2",
            {"id": "u2", "email": "a@x.com", "phone": "555", "address": None},
            {"id": "u2", "email": "b@x.com", "phone": "555", "address": "Main St"},
            USER_LINK_RULES,
        )

        assert dropped == [SAME_EMAIL, SAME_ADDRESS]
        store.delete_edges.assert_has_awaits(
            [call(USER_LABEL, "u2", SAME_EMAIL), call(USER_LABEL, "u2", SAME_ADDRESS)]
        )

    @pytest.mark.asyncio
    async def test_payment_methods_are_not_linked(self, store):
        """Test that sharing only a payment method category creates no edge."""
        store.nodes[USER_LABEL]["u1"] = {"id": "u1", "paymentMethods": ["card"]}
        store.nodes[USER_LABEL]["u2"] = {"id": "u2", "paymentMethods": ["card"]}

        result = await LinkageEngine(store).link_user(User(id="u2", paymentMethods=["card"]))

        assert result.total == 0
        assert store.edges == []
