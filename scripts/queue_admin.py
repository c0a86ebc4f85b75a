#!/usr/bin/env python3
"""
Queue Admin — Inspect and repair the dispatch queue.

Usage:
    # Backlog size and lease count:
    python scripts/queue_admin.py status

    # Show the next N pending requests without consuming them:
    python scripts/queue_admin.py peek --count 5

    # Push expired leases (crashed workers) back onto the queue now:
    python scripts/queue_admin.py reclaim

    # Ensure the attemptId index on a subject's live-chat collection:
    python scripts/queue_admin.py ensure-index --tenant acme --subject 64b7f0c2a1d3e4f5a6b7c8d9
"""
import argparse
import asyncio
import json
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _open_queue(settings):
    from job_queue.message_queue import create_dispatch_queue

    q = settings.queue
    queue = create_dispatch_queue({
        "backend": q.backend,
        "redis_url": q.redis_url,
        "queue_name": q.queue_name,
        "lease_timeout_seconds": q.lease_timeout_seconds,
    })
    await queue.connect()
    return queue


async def run_status(settings) -> None:
    queue = await _open_queue(settings)
    try:
        print(f"Queue:    {queue.queue_name} ({settings.queue.backend})")
        print(f"Pending:  {await queue.queue_length()}")
        if settings.queue.backend == "redis":
            leased = await queue._redis.zcard(queue.lease_key)
            print(f"Leased:   {leased}")
    finally:
        await queue.close()


async def run_peek(settings, count: int) -> None:
    queue = await _open_queue(settings)
    try:
        items = await queue.peek(count)
        if not items:
            print("Queue is empty.")
        for item in items:
            print(json.dumps({
                "tenant": item.tenant,
                "subjectId": item.subject_id,
                "attemptId": item.attempt_id,
                "submittedAt": item.submitted_at,
                "messageId": item.message_id,
            }))
    finally:
        await queue.close()


async def run_reclaim(settings) -> None:
    queue = await _open_queue(settings)
    try:
        count = await queue.reclaim_expired()
        print(f"Reclaimed {count} expired lease(s).")
    finally:
        await queue.close()


async def run_ensure_index(settings, tenant: str, subject_id: str) -> None:
    from database.store_mongo import MongoDispatchStore

    store = MongoDispatchStore(settings.mongo)
    await store.connect()
    try:
        database = store.namespaces.database_for(tenant)
        collection = store.namespaces.live_chat_collection(subject_id)
        await store._ensure_attempt_index(database, collection)
        print(f"attemptId index present on {database}.{collection} ✓")
    finally:
        await store.close()


def main():
    parser = argparse.ArgumentParser(description="Dispatch queue administration")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="Show backlog and lease counts")
    peek = sub.add_parser("peek", help="Show pending requests")
    peek.add_argument("--count", type=int, default=10)
    sub.add_parser("reclaim", help="Requeue expired leases")
    index = sub.add_parser("ensure-index", help="Create the live-chat attemptId index")
    index.add_argument("--tenant", required=True)
    index.add_argument("--subject", required=True)
    args = parser.parse_args()

    from dotenv import load_dotenv
    from config.settings import load_settings
    load_dotenv()
    settings = load_settings(args.config)

    if args.command == "status":
        asyncio.run(run_status(settings))
    elif args.command == "peek":
        asyncio.run(run_peek(settings, args.count))
    elif args.command == "reclaim":
        asyncio.run(run_reclaim(settings))
    else:
        asyncio.run(run_ensure_index(settings, args.tenant, args.subject))


if __name__ == "__main__":
    main()
