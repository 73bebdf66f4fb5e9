"""Export audit entries as JSON lines:
- all entries, or only those for one magic link (--link-id)
- oldest first
Writes to stdout, or to --output.
"""
import argparse, json, sys
from snaglink.config import Settings
from snaglink.db import SqliteStore

def main():
    parser = argparse.ArgumentParser(description="Export the audit log as JSON lines")
    parser.add_argument("--link-id", default=None)
    parser.add_argument("--limit", type=int, default=10000)
    parser.add_argument("--output", default=None)
    args = parser.parse_args()

    store = SqliteStore(Settings().db_path)
    store.init()
    try:
        entries = store.list_audit(resource_id=args.link_id, limit=args.limit)
    finally:
        store.close()

    out = open(args.output, "w", encoding="utf-8") if args.output else sys.stdout
    try:
        for entry in entries:
            out.write(json.dumps(entry, sort_keys=True) + "\n")
    finally:
        if out is not sys.stdout:
            out.close()
    if args.output:
        print(f"wrote {len(entries)} entries to {args.output}", file=sys.stderr)

if __name__ == "__main__":
    main()
