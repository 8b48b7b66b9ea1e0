# boxoffice/scripts/seed_event.py
import asyncio

from sqlalchemy import select

from boxoffice.db.session import async_session
from boxoffice.models.api_key import ApiKey
from boxoffice.models.ticket_type import TicketType
from boxoffice.security.api_key import hash_key

# -----------------------------
# Configurable test data
# -----------------------------
TEST_EVENT_ID = "evt-local-launch"
TEST_SCANNER_KEY = "local-scanner-key"  # Use this in X-API-Key header
TEST_SCANNER_LABEL = "front-door-1"

TICKET_TYPES = [
    # name, kind, price, fee, inventory, guests per unit, max entries
    ("General Admission", "ga", 2500, 0, 200, 1, 1),
    ("VIP Table (4 guests)", "vip_table", 40000, 2000, 10, 4, 3),
]


# -----------------------------
# Async main
# -----------------------------
async def main() -> None:
    async with async_session() as db:
        for name, kind, price, fee, inventory, guests, entries in TICKET_TYPES:
            existing = (
                await db.execute(
                    select(TicketType).where(
                        TicketType.event_id == TEST_EVENT_ID,
                        TicketType.name == name,
                    )
                )
            ).scalar_one_or_none()
            if existing:
                print(f"ℹ️ Ticket type exists: {name} (ID: {existing.id})")
                continue

            tt = TicketType(
                event_id=TEST_EVENT_ID,
                name=name,
                kind=kind,
                unit_price_cents=price,
                unit_fee_cents=fee,
                total_inventory=inventory,
                tickets_sold=0,
                guests_per_unit=guests,
                max_entries=entries,
            )
            db.add(tt)
            await db.flush()
            print(f"✅ Created ticket type: {name} (ID: {tt.id})")

        key_hash = hash_key(TEST_SCANNER_KEY)
        existing_key = (
            await db.execute(select(ApiKey).where(ApiKey.key_hash == key_hash))
        ).scalar_one_or_none()
        if not existing_key:
            db.add(ApiKey(key_hash=key_hash, label=TEST_SCANNER_LABEL, role="scanner", is_active=True))
            print(f"✅ Created scanner key → {TEST_SCANNER_KEY}")
        else:
            print(f"ℹ️ Scanner key already exists → {TEST_SCANNER_KEY}")

        await db.commit()


# -----------------------------
# Run the script
# -----------------------------
if __name__ == "__main__":
    asyncio.run(main())
