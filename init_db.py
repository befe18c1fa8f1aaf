"""
Tiny helper script to create the marketplace database before running the app.
Usage: python init_db.py [--no-seed] [--rotate-keys]

--rotate-keys re-encrypts stored addresses under the first SENSITIVE_DATA_KEY.
"""

import sys

from database import DATABASE_URL, init_db, reencrypt_personal_data


def main() -> None:
    args = sys.argv[1:]
    seed = "--no-seed" not in args
    init_db(seed=seed)
    print(f"Database ready at {DATABASE_URL}" + ("" if seed else " (no demo data)"))
    if "--rotate-keys" in args:
        print(f"Re-encrypted {reencrypt_personal_data()} rows")


if __name__ == "__main__":
    main()
