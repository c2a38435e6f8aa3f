import os

from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient

load_dotenv()

MONGODB_URI = os.getenv("MONGODB_URI") or os.getenv("MONGO_URI")
if not MONGODB_URI:
    raise RuntimeError("MONGODB_URI not set")

# Motor connects lazily; nothing touches the network until the first query.
client = AsyncIOMotorClient(MONGODB_URI, serverSelectionTimeoutMS=10_000)
db = client.get_default_database()


def get_db():
    return db


async def ping_db() -> bool:
    await db.command("ping")
    return True


def close_db() -> None:
    client.close()
