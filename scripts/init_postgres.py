"""Create every agent core table in the configured database (DATABASE_URL)."""
import asyncio
import sys
sys.path.insert(0, ".")

from app.core.database import Base, close_db, init_db


async def create_tables():
    await init_db()

    print(f"📦 Registered tables: {len(Base.metadata.tables)}")
    for table in Base.metadata.tables:
        print(f"   - {table}")

    await close_db()
    print("\n✅ All tables created!")


if __name__ == "__main__":
    asyncio.run(create_tables())
