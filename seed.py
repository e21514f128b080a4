"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 5 service zones (Accra metro, Kotoka airport, Tema, Kumasi, Takoradi)
  - 3 inter-regional routes (Accra <-> Kumasi / Takoradi, Kumasi <-> Takoradi)
  - 12 providers spread over the zones, online and available
"""

import asyncio

from sqlalchemy import func, select

from dispatch_core.config import settings
from dispatch_core.domain.enums import ServiceKind, ZoneType
from dispatch_core.domain.matching import cell_for
from dispatch_core.infrastructure.database import async_session_factory, engine
from dispatch_core.infrastructure.models import (
    InterRegionalRouteModel,
    ProviderModel,
    ProviderZoneModel,
    ServiceZoneModel,
)

ZONES = [
    # name, display, lat, lng, radius_m, type, priority, inter-regional fee
    ("accra", "Greater Accra", 5.6037, -0.1870, 25_000, ZoneType.REGIONAL, 0, 15.0),
    ("kotoka", "Kotoka International Airport", 5.6052, -0.1668, 2_500, ZoneType.LOCAL, 10, 0.0),
    ("tema", "Tema", 5.6698, -0.0166, 8_000, ZoneType.LOCAL, 5, 0.0),
    ("kumasi", "Kumasi", 6.6885, -1.6244, 20_000, ZoneType.REGIONAL, 0, 25.0),
    ("takoradi", "Sekondi-Takoradi", 4.8845, -1.7554, 15_000, ZoneType.REGIONAL, 0, 20.0),
]

ROUTES = [
    # origin, destination, base fee, requires approval
    ("accra", "kumasi", 50.0, False),
    ("accra", "takoradi", 45.0, False),
    ("kumasi", "takoradi", 60.0, True),
]

_RIDES = [ServiceKind.RIDE.value, ServiceKind.TAXI.value, ServiceKind.SHARED_RIDE.value]
_HAULAGE = [ServiceKind.HOUSE_MOVING.value, ServiceKind.DAY_BOOKING.value]

PROVIDERS = [
    # name, rating, kinds, lat, lng, zones, inter-regional zones
    ("Kwame Mensah", 4.9, _RIDES, 5.6040, -0.1700, ["accra", "kotoka"], ["accra"]),
    ("Ama Owusu", 4.8, _RIDES, 5.6100, -0.1800, ["accra", "kotoka"], []),
    ("Kofi Asante", 4.6, _RIDES, 5.5900, -0.2000, ["accra"], []),
    ("Efua Boateng", 4.7, [ServiceKind.DISPATCH_DELIVERY.value], 5.5800, -0.2100, ["accra"], []),
    ("Yaw Darko", 4.5, [ServiceKind.DISPATCH_DELIVERY.value], 5.6200, -0.1600, ["accra", "tema"], []),
    ("Akosua Frimpong", 4.9, _HAULAGE, 5.6300, -0.1500, ["accra", "tema"], ["accra"]),
    ("Kojo Appiah", 4.4, _RIDES, 5.6690, -0.0200, ["tema", "accra"], []),
    ("Abena Osei", 4.8, _RIDES, 6.6900, -1.6200, ["kumasi"], ["kumasi"]),
    ("Kwabena Agyei", 4.6, _RIDES + _HAULAGE, 6.7000, -1.6300, ["kumasi"], []),
    ("Adwoa Sarpong", 4.7, [ServiceKind.DISPATCH_DELIVERY.value], 6.6800, -1.6100, ["kumasi"], []),
    ("Nana Addo", 4.5, _RIDES, 4.8900, -1.7500, ["takoradi"], ["takoradi"]),
    ("Esi Quaye", 4.8, _RIDES + _HAULAGE, 4.8800, -1.7600, ["takoradi"], []),
]


async def seed():
    async with async_session_factory() as session:
        # Check if already seeded
        result = await session.execute(
            select(func.count()).select_from(ServiceZoneModel)
        )
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        # ── Zones ─────────────────────────────────────────────────────
        zones = {}
        for name, display, lat, lng, radius, kind, priority, fee in ZONES:
            zone = ServiceZoneModel(
                name=name,
                display_name=display,
                center_lat=lat,
                center_lng=lng,
                radius_m=radius,
                zone_type=kind,
                priority=priority,
                inter_regional_fee=fee,
            )
            session.add(zone)
            zones[name] = zone
        await session.flush()
        print(f"  Created {len(zones)} zones")

        # ── Inter-regional routes ─────────────────────────────────────
        for origin, destination, fee, approval in ROUTES:
            session.add(
                InterRegionalRouteModel(
                    origin_zone_id=zones[origin].id,
                    destination_zone_id=zones[destination].id,
                    base_fee=fee,
                    requires_approval=approval,
                )
            )
        await session.flush()
        print(f"  Created {len(ROUTES)} inter-regional routes")

        # ── Providers ─────────────────────────────────────────────────
        for name, rating, kinds, lat, lng, authorised, inter in PROVIDERS:
            provider = ProviderModel(
                name=name,
                rating=rating,
                service_kinds=kinds,
                is_online=True,
                is_available=True,
                latitude=lat,
                longitude=lng,
                h3_cell=cell_for(lat, lng, settings.h3_resolution),
                current_zone_id=zones[authorised[0]].id,
            )
            session.add(provider)
            await session.flush()
            for zone_name in authorised:
                session.add(
                    ProviderZoneModel(
                        provider_id=provider.id,
                        zone_id=zones[zone_name].id,
                        can_accept_inter_regional=zone_name in inter,
                    )
                )
        await session.flush()
        print(f"  Created {len(PROVIDERS)} providers")

        await session.commit()
        print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
