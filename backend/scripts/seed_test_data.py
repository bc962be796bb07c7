"""
Seed Test Data — Creates realistic demo data for development.

Run: python scripts/seed_test_data.py
"""

import asyncio
import random

from core.config import get_settings
from db.models import LoyaltyCard, Store, Trolley
from db.session import Database

settings = get_settings()

# (name, city, province, lat, lon, geofence radius m)
STORES = [
    ("Shoprite Durbanville", "Durbanville", "Western Cape", -33.8356, 18.6481, 500),
    ("Shoprite Cape Town CBD", "Cape Town", "Western Cape", -33.9249, 18.4241, 300),
    ("Shoprite Johannesburg CBD", "Johannesburg", "Gauteng", -26.2041, 28.0473, 500),
    ("Shoprite Durban Central", "Durban", "KwaZulu-Natal", -29.8587, 31.0218, 400),
]
TROLLEYS_PER_STORE = 12

# (card, name, phone, points, tier, lifetime returns, streak, active, blocked reason)
CARDS = [
    ("XS001234567", "Thabo Mkhize", "+27821234567", 150, "bronze", 8, 3, True, None),
    ("XS002345678", "Sarah van der Merwe", "+27822345678", 450, "silver", 25, 5, True, None),
    ("XS003456789", "Lerato Ndlovu", "+27823456789", 890, "gold", 52, 10, True, None),
    ("XS004567890", "John Smith", "+27824567890", 1250, "diamond", 105, 15, True, None),
    (
        "XS005678901",
        "Zanele Dlamini",
        "+27825678901",
        75,
        "bronze",
        4,
        0,
        False,
        "3 unreturned trolleys. Please return all trolleys to reactivate card.",
    ),
]


async def seed_data():
    """Create demo data for development."""
    database = Database.from_settings(settings)
    await database.create_all()

    try:
        async with database.session() as db:
            # ── Stores ───────────────────────────────────────────
            stores = []
            for name, city, province, lat, lon, radius in STORES:
                store = Store(
                    name=name,
                    brand="Shoprite",
                    city=city,
                    province=province,
                    latitude=lat,
                    longitude=lon,
                    geofence_radius=radius,
                )
                db.add(store)
                stores.append(store)
            await db.flush()

            # ── Trolleys ─────────────────────────────────────────
            trolley_count = 0
            for store_number, store in enumerate(stores, start=1):
                for i in range(TROLLEYS_PER_STORE):
                    status = random.choices(["active", "maintenance", "recovered"], weights=[85, 10, 5])[0]
                    db.add(
                        Trolley(
                            store_id=store.store_id,
                            rfid_tag=f"RFID-{store_number:02d}{i + 1:04d}",
                            barcode=f"TRL-{store_number:02d}{i + 1:04d}",
                            status=status,
                        )
                    )
                    trolley_count += 1

            # ── XS Loyalty Cards ─────────────────────────────────
            for number, name, phone, points, tier, returns, streak, active, reason in CARDS:
                db.add(
                    LoyaltyCard(
                        card_number=number,
                        customer_name=name,
                        phone_number=phone,
                        points_balance=points,
                        tier=tier,
                        total_trolley_returns=returns,
                        consecutive_returns=streak,
                        is_active=active,
                        blocked_reason=reason,
                    )
                )

            await db.commit()
        print(f"✅ Seeded: {len(stores)} stores, {trolley_count} trolleys, {len(CARDS)} XS cards")
    finally:
        await database.dispose()


if __name__ == "__main__":
    asyncio.run(seed_data())
