"""Create an admin API key for local use and print the raw token once."""
from auditlog.db import get_sessionmaker, init_engine
from auditlog.models.api_key import ApiKey, ApiRole
from auditlog.utils.apikey import gen_key


def main() -> None:
    init_engine()
    SessionLocal = get_sessionmaker()
    db = SessionLocal()

    raw_token, prefix, key_hash = gen_key()

    try:
        api_key = ApiKey(
            name="dev-admin-key",
            prefix=prefix,
            key_hash=key_hash,
            role=ApiRole.admin,
            is_active=True,
        )
        db.add(api_key)
        db.commit()
        db.refresh(api_key)

        print("==========================================")
        print("Admin API key created")
        print("Use this key in your Authorization header:")
        print(f"    Authorization: Bearer {raw_token}")
        print(f"(DB id: {api_key.id}, role: {api_key.role.value})")
        print("==========================================")
    finally:
        db.close()


if __name__ == "__main__":
    main()
