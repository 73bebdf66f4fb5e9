"""Delete rate-limit counters whose window has ended. Safe to run from cron."""
from snaglink.config import Settings
from snaglink.db import SqliteStore
from snaglink.rate_limit import RateLimiter

def main():
    settings = Settings()
    store = SqliteStore(settings.db_path)
    store.init()
    try:
        removed = RateLimiter(store, settings.rate_limits).sweep()
    finally:
        store.close()
    print(f"removed {removed} expired rate limit counters")

if __name__ == "__main__":
    main()
