#!/usr/bin/env python3
"""
Hard-delete magic links that expired or were revoked more than N days ago.
Access records and audit entries for those links are removed with them.

Usage:
    python tools/purge_links.py --older-than-days 90
"""
import argparse
from snaglink.audit import AuditRecorder, SqliteAuditSink
from snaglink.config import Settings
from snaglink.db import SqliteStore
from snaglink.dispatch import BackgroundDispatcher
from snaglink.links import LinkService
from snaglink.pin_gate import PinGate

def main():
    parser = argparse.ArgumentParser(description="Purge old magic links")
    parser.add_argument("--older-than-days", type=int, required=True)
    args = parser.parse_args()

    settings = Settings()
    store = SqliteStore(settings.db_path)
    store.init()
    dispatcher = BackgroundDispatcher()
    service = LinkService(store, PinGate(store), AuditRecorder(SqliteAuditSink(store), dispatcher))
    try:
        removed = service.purge_links(args.older_than_days)
    finally:
        dispatcher.close()
        store.close()
    print(f"purged {removed} magic links")

if __name__ == "__main__":
    main()
