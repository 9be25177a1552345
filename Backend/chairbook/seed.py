from datetime import time

from sqlalchemy import select

from .models import Client, Provider, Service, WeeklyAvailabilityRule


DEMO_BUSINESS_NAME = "Chairbook Demo Barbershop"


async def seed_initial_data(session):
    result = await session.execute(select(Provider).where(Provider.business_name == DEMO_BUSINESS_NAME))
    provider = result.scalar_one_or_none()

    if not provider:
        provider = Provider(
            business_name=DEMO_BUSINESS_NAME,
            owner_name="Alex",
            email="alex@example.com",
            address="123 Main St",
        )
        session.add(provider)
        await session.flush()

    # Tuesday-Saturday 09:00-17:00; Sunday and Monday closed
    result = await session.execute(
        select(WeeklyAvailabilityRule).where(WeeklyAvailabilityRule.provider_id == provider.id)
    )
    if not result.scalars().all():
        session.add_all(
            [
                WeeklyAvailabilityRule(
                    provider_id=provider.id,
                    day_of_week=day,
                    start_time=time(9, 0),
                    end_time=time(17, 0),
                )
                for day in range(2, 7)
            ]
        )

    result = await session.execute(select(Service).where(Service.provider_id == provider.id))
    if not result.scalars().all():
        session.add_all(
            [
                Service(provider_id=provider.id, name="Haircut", duration_minutes=30, price_cents=3500),
                Service(provider_id=provider.id, name="Beard Trim", duration_minutes=30, price_cents=2000),
                Service(
                    provider_id=provider.id,
                    name="Haircut + Beard",
                    duration_minutes=60,
                    price_cents=5000,
                    deposit_required=True,
                    deposit_amount_cents=1000,
                ),
            ]
        )

    result = await session.execute(select(Client).where(Client.email == "sam@example.com"))
    if not result.scalar_one_or_none():
        session.add(Client(first_name="Sam", last_name="Rivera", email="sam@example.com"))

    await session.commit()
