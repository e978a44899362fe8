#!/usr/bin/env python3
"""
Replay webhook events that were recorded but never processed.

Usage:
    python3 scripts/replay_webhook_events.py                       # list pending log rows
    python3 scripts/replay_webhook_events.py --replay              # replay all pending in-process
    python3 scripts/replay_webhook_events.py --replay --id <log>   # replay one row
    python3 scripts/replay_webhook_events.py --url https://host/api/v1/webhooks/orders
                                                                   # re-POST pending payloads
"""
import argparse
import logging
import sys
import requests

from entitlement_sync.config import settings
from entitlement_sync.db import SessionLocal, init_engine
from entitlement_sync.services.event_log import EventLogStore
from entitlement_sync.services.ingestion import WebhookIngestor
from entitlement_sync.services.replay import pending_log_ids, replay_in_process, repost_log_row

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Replay unprocessed webhook events")
    parser.add_argument("--id", action="append", dest="ids", help="Webhook log id (repeatable)")
    parser.add_argument("--limit", type=int, default=100, help="Max pending rows to consider")
    parser.add_argument("--replay", action="store_true", help="Replay in-process against DATABASE_URL")
    parser.add_argument("--url", help="Re-POST stored payloads to this endpoint instead")
    args = parser.parse_args()

    init_engine(settings.database_url)
    db = SessionLocal()
    try:
        log_store = EventLogStore(db)
        log_ids = args.ids or pending_log_ids(log_store, limit=args.limit)
        if not log_ids:
            print("No unprocessed webhook events.")
            return 0

        if args.url:
            failures = 0
            for log_id in log_ids:
                try:
                    response = repost_log_row(log_store, log_id, args.url)
                except LookupError:
                    print(f"❌ {log_id}: not found")
                    failures += 1
                    continue
                except requests.RequestException as e:
                    print(f"❌ {log_id}: {e}")
                    failures += 1
                    continue
                print(f"{'✅' if response.ok else '❌'} {log_id}: HTTP {response.status_code} {response.text[:200]}")
                failures += 0 if response.ok else 1
            return 1 if failures else 0

        if args.replay:
            ingestor = WebhookIngestor(SessionLocal, settings)
            try:
                outcomes = replay_in_process(ingestor, log_ids)
            finally:
                ingestor.shutdown()
            for log_id, outcome in outcomes.items():
                print(f"{'✅' if outcome.success else '❌'} {log_id}: {outcome.message}")
            return 0 if all(o.success for o in outcomes.values()) else 1

        for log_id in log_ids:
            row = log_store.get(log_id)
            if row is None:
                print(f"❌ {log_id}: not found")
                continue
            print(f"{row.id}  {row.created_at}  {row.event_type:<18} {row.error_message or '(never finished)'}")
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
