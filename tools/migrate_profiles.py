import asyncio
import os
from pathlib import Path

from pictocat.db import Database
from pictocat.logs import setup_logging
from pictocat.profile import SCHEMA_VERSION, migrate_all


ROOT = Path(__file__).resolve().parents[1]
DB_PATH = Path(os.getenv("DB_PATH", ROOT / "pictocat.db"))


async def run(db_path: Path) -> int:
    db = Database(db_path)
    await db.connect()
    try:
        await db.init()
        return await migrate_all(db)
    finally:
        await db.close()


def main() -> None:
    setup_logging()
    if not DB_PATH.exists():
        raise SystemExit(f"DB not found: {DB_PATH}")

    backup = DB_PATH.with_suffix(".bak")
    if not backup.exists():
        backup.write_bytes(DB_PATH.read_bytes())

    migrated = asyncio.run(run(DB_PATH))
    print(f"Migration complete: {migrated} profiles now at schema {SCHEMA_VERSION}.")


if __name__ == "__main__":
    main()
