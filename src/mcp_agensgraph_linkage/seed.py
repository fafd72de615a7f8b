"""Demo data for the linkage graph.

Two datasets are available:

* ``bulk``: many users and transactions, with IPs and devices drawn from small
  per-batch pools so that linkage edges appear. Linkage is capped at
  ``BULK_INSERT_FANOUT`` edges per transaction.
* ``small``: eight users, some sharing emails and phones, and twelve
  transactions over three IPs and three devices.
"""

import argparse
import asyncio
import logging
import os
import random
import uuid
from typing import List, Optional

from psycopg_pool import AsyncConnectionPool

from .linkage import BULK_INSERT_FANOUT, LinkageEngine
from .linkage_graph import LinkageGraph, now_millis
from .models import TransactionPayload, UserPayload
from .store import AgensGraphStore
from .utils import add_db_arguments, build_connection_url, process_db_config

logger = logging.getLogger("mcp_agensgraph_linkage")
logger.setLevel(logging.INFO)

SMALL_USERS = 8
SMALL_TRANSACTIONS = 12
SMALL_FANOUT = 3


def bulk_users(n: int) -> List[UserPayload]:
    return [
        UserPayload(
            id=f"user-{i}",
            name=f"User {i}",
            email=f"user{i}@example.com",
            phone=f"90000{i:05d}",
            address=f"Address {i}",
            paymentMethods=["card"] + (["upi"] if i % 5 == 0 else []),
        )
        for i in range(n)
    ]


def small_users() -> List[UserPayload]:
    """Users 1-3 share one email, 4-5 another; users 1-4 and 5-6 share phones."""
    shared_emails = ["sharedA@example.com", "sharedB@example.com"]
    shared_phones = ["9990000001", "9990000002"]

    users = []
    for i in range(SMALL_USERS):
        if i < 3:
            email = shared_emails[0]
        elif i < 5:
            email = shared_emails[1]
        else:
            email = f"user{i}@example.com"

        if i < 4:
            phone = shared_phones[0]
        elif i < 6:
            phone = shared_phones[1]
        else:
            phone = f"900000{i}"

        users.append(
            UserPayload(
                id=f"user-{i + 1}",
                name=f"User {i + 1}",
                email=email,
                phone=phone,
                address=f"Address {i + 1}",
                paymentMethods=["card"] + (["upi"] if i % 3 == 0 else []),
            )
        )
    return users


def _pick_pair(users: List[UserPayload], rng: random.Random):
    sender = rng.randrange(len(users))
    receiver = rng.randrange(len(users))
    if receiver == sender:
        receiver = (receiver + 1) % len(users)
    return users[sender].id, users[receiver].id


def bulk_transactions(
    users: List[UserPayload], batch: int, size: int, rng: random.Random
) -> List[TransactionPayload]:
    """One batch of transactions. Each batch draws from its own IP and device pools."""
    ip_pool = [
        f"10.0.0.{batch % 250 + 1}",
        f"172.16.0.{batch % 250 + 1}",
        f"192.168.1.{batch % 250 + 1}",
    ]
    device_pool = [f"device-{batch % 500 + 1}", f"device-{(batch + 7) % 500 + 1}"]

    transactions = []
    for _ in range(size):
        sender_id, receiver_id = _pick_pair(users, rng)
        transactions.append(
            TransactionPayload(
                id=str(uuid.UUID(int=rng.getrandbits(128), version=4)),
                amount=rng.randrange(50000) / 100,
                timestamp=now_millis(),
                senderId=sender_id,
                receiverId=receiver_id,
                ip=rng.choice(ip_pool),
                deviceId=rng.choice(device_pool),
            )
        )
    return transactions


def small_transactions(users: List[UserPayload], rng: random.Random) -> List[TransactionPayload]:
    ip_pool = ["10.0.0.1", "10.0.0.5", "192.168.1.10"]
    device_pool = ["device-1", "device-2", "device-5"]

    transactions = []
    for _ in range(SMALL_TRANSACTIONS):
        sender_id, receiver_id = _pick_pair(users, rng)
        transactions.append(
            TransactionPayload(
                id=str(uuid.UUID(int=rng.getrandbits(128), version=4)),
                amount=rng.randrange(10000) / 100,
                timestamp=now_millis(),
                senderId=sender_id,
                receiverId=receiver_id,
                ip=rng.choice(ip_pool),
                deviceId=rng.choice(device_pool),
            )
        )
    return transactions


async def seed_bulk(
    graph: LinkageGraph,
    n_users: int,
    total_transactions: int,
    batch_size: int,
    rng: Optional[random.Random] = None,
) -> None:
    rng = rng or random.Random()
    users = bulk_users(n_users)
    for user in users:
        await graph.upsert_user(user)
    logger.info(f"Created {len(users)} users")

    n_batches = -(-total_transactions // batch_size)
    logger.info(
        f"Creating {total_transactions} transactions in {n_batches} batches (batch size {batch_size})"
    )
    for b in range(n_batches):
        size = min(batch_size, total_transactions - b * batch_size)
        for tx in bulk_transactions(users, b, size, rng):
            await graph.create_transaction(tx)
        logger.info(f"Batch {b + 1}/{n_batches} created ({size} transactions)")


async def seed_small(graph: LinkageGraph, rng: Optional[random.Random] = None) -> None:
    rng = rng or random.Random()
    users = small_users()
    for user in users:
        await graph.upsert_user(user)
    logger.info(f"Created {len(users)} users")

    for tx in small_transactions(users, rng):
        await graph.create_transaction(tx)
    logger.info(f"Created {SMALL_TRANSACTIONS} transactions")


def bulk_graph(store) -> LinkageGraph:
    return LinkageGraph(store, linkage=LinkageEngine(store, BULK_INSERT_FANOUT))


def small_graph(store) -> LinkageGraph:
    return LinkageGraph(store, linkage=LinkageEngine(store, SMALL_FANOUT))


async def run(args: argparse.Namespace) -> None:
    config = process_db_config(args)
    db_url = build_connection_url(
        config["agensgraph_url"],
        config["agensgraph_user"],
        config["agensgraph_password"],
        config["agensgraph_database"],
    )
    rng = random.Random(args.seed)

    async with AsyncConnectionPool(db_url, open=False) as pool:
        store = AgensGraphStore(pool, config["agensgraph_graphname"])
        await store.ensure_schema()

        if args.dataset == "small":
            logger.info("Generating small test dataset")
            await seed_small(small_graph(store), rng)
        else:
            logger.info("Starting data generation")
            await seed_bulk(bulk_graph(store), args.users, args.transactions, args.batch, rng)
    logger.info("Data generation complete")


def main():
    """Entry point of the `mcp-agensgraph-linkage-seed` command."""
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description="Load demo users and transactions into AgensGraph")
    add_db_arguments(parser)
    parser.add_argument("--dataset", choices=["bulk", "small"], default="bulk")
    parser.add_argument(
        "--users", type=int, default=int(os.getenv("N_USERS", "1000")), help="Number of users (bulk)"
    )
    parser.add_argument(
        "--transactions",
        type=int,
        default=int(os.getenv("TOTAL_TX", "100000")),
        help="Number of transactions (bulk)",
    )
    parser.add_argument(
        "--batch", type=int, default=int(os.getenv("BATCH", "1000")), help="Transactions per batch (bulk)"
    )
    parser.add_argument("--seed", type=int, default=None, help="Random seed")

    args = parser.parse_args()
    if args.batch < 1:
        parser.error("--batch must be positive")
    if args.dataset == "bulk" and args.users < 2:
        parser.error("--users must be at least 2")
    asyncio.run(run(args))
