"""
RepairDesk CRM - Seed staff + sessions (dev/staging only)
One active staff member per role, each with a 30-day bearer token.
Run: cd backend && python3 scripts/seed_staff.py
Reset: python3 scripts/seed_staff.py --reset
"""

import asyncio
import secrets
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import config
from services.permissions import VALID_ROLES

SEED_DOMAIN = "repairdesk.test"


async def seed(reset: bool = False):
    db = config.db

    if reset:
        seeded = await db.staff.find({"email": {"$regex": f"@{SEED_DOMAIN}$"}}, {"id": 1}).to_list(100)
        ids = [s["id"] for s in seeded]
        await db.sessions.delete_many({"staff_id": {"$in": ids}})
        await db.staff.delete_many({"id": {"$in": ids}})
        print(f"Removed {len(ids)} seeded staff")

    now = datetime.now(timezone.utc)
    expires = (now + timedelta(days=30)).isoformat()

    print(f"\n{'ROLE':<18} {'EMAIL':<36} TOKEN")
    for role in VALID_ROLES:
        email = f"{role}@{SEED_DOMAIN}"
        staff = await db.staff.find_one({"email": email}, {"_id": 0})
        if not staff:
            staff = {
                "id": str(uuid.uuid4()),
                "auth_user_id": f"seed-{role}",
                "full_name": role.replace("_", " ").title(),
                "email": email,
                "phone": None,
                "role": role,
                "is_active": True,
                "created_at": now.isoformat(),
                "updated_at": now.isoformat(),
            }
            await db.staff.insert_one(dict(staff))

        token = secrets.token_urlsafe(32)
        await db.sessions.insert_one({
            "token": token,
            "staff_id": staff["id"],
            "expires_at": expires,
            "created_at": now.isoformat(),
        })
        print(f"{role:<18} {email:<36} {token}")

    config.client.close()


if __name__ == "__main__":
    asyncio.run(seed(reset="--reset" in sys.argv))
