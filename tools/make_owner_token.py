import sys
from snaglink.auth import issue_owner_token
from snaglink.config import Settings

def main(user_id: str):
    settings = Settings()
    print(issue_owner_token(user_id, settings.jwt_secret, settings.jwt_ttl_minutes))

if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python tools/make_owner_token.py <user_id>"); raise SystemExit(2)
    main(sys.argv[1])
