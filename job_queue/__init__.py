"""
Dispatch Queue — Decouples request ingestion from delivery.

- The ingestion API PUSHES send requests onto a Redis list and returns 202
- Worker processes POP leased batches, dispatch them, commit, then ack
- Supports Redis (production) and an in-memory deque (dev/tests)
"""
