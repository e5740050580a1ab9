"""
Seed script: creates demo projects and prints a development bearer token
for each approval role.
Run from the repo root: python -m scripts.seed
"""
import asyncio
import sys
import os
import uuid
from datetime import datetime, timedelta, timezone

# Ensure the project root is on sys.path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from jose import jwt
from sqlalchemy import select

from prflow.config import settings
from prflow.database import AsyncSessionLocal, engine, init_db
from prflow.models.project import Project
from prflow.services.identity import Role

# ---------- Fixed UUIDs ----------

PROJECT_TOWER_ID = uuid.UUID("c0000000-0000-0000-0000-000000000001")
PROJECT_BRIDGE_ID = uuid.UUID("c0000000-0000-0000-0000-000000000002")

DEV_ACTORS = [
    ("site-001", Role.SITE_TEAM),
    ("purch-001", Role.PURCHASING),
    ("cc-001", Role.COST_CONTROL),
    ("gm-001", Role.GENERAL_MANAGER),
]


def mint_dev_token(actor_id: str, role: Role, hours: int = 12) -> str:
    """HS256 token for local testing; production tokens come from the identity provider."""
    if not settings.JWT_SECRET_KEY:
        raise SystemExit("Set JWT_SECRET_KEY to mint development tokens")
    now = datetime.now(timezone.utc)
    claims = {
        "sub": actor_id,
        "role": role.value,
        "iat": now,
        "exp": now + timedelta(hours=hours),
    }
    if settings.JWT_AUDIENCE:
        claims["aud"] = settings.JWT_AUDIENCE
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm="HS256")


async def seed():
    await init_db()
    async with AsyncSessionLocal() as db:
        result = await db.execute(select(Project).where(Project.id == PROJECT_TOWER_ID))
        if result.scalar_one_or_none():
            print("Seed data already exists. Skipping projects.")
        else:
            db.add_all(
                [
                    Project(id=PROJECT_TOWER_ID, code="PRJ-TWR", name="Riverside Tower"),
                    Project(id=PROJECT_BRIDGE_ID, code="PRJ-BRG", name="North Bridge Retrofit"),
                ]
            )
            await db.commit()
            print("Seed data inserted successfully!")
            print(f"  Projects: 2 ({PROJECT_TOWER_ID}, {PROJECT_BRIDGE_ID})")

    if settings.JWT_ALGORITHM.upper() == "HS256":
        print("Development tokens:")
        for actor_id, role in DEV_ACTORS:
            print(f"  {role.value:<16} {mint_dev_token(actor_id, role)}")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed())
