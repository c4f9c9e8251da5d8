from decimal import Decimal

import jwt
import pytest
from fakeredis import aioredis as fake_aioredis
from httpx import ASGITransport, AsyncClient

from app.config import Settings
from app.db import init_db
from app.main import create_app
from app.models import Pizza, PizzaSize, User

JWT_SECRET = "test-secret"

CUSTOMER_ID = "user-customer"
OTHER_CUSTOMER_ID = "user-other"
STAFF_ID = "user-staff"
MARGHERITA_ID = "pizza-margherita"
PEPPERONI_ID = "pizza-pepperoni"


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        jwt_secret=JWT_SECRET,
        sync_poller_enabled=False,
        realtime_relay="local",
    )
    values.update(overrides)
    return Settings(**values)


def token_for(user_id: str) -> str:
    return jwt.encode({"userId": user_id}, JWT_SECRET, algorithm="HS256")


def auth_header(user_id: str) -> dict:
    return {"Authorization": f"Bearer {token_for(user_id)}"}


def seed_rows() -> list:
    margherita = Pizza(
        id=MARGHERITA_ID,
        name="Margherita",
        description="Tomato, mozzarella, basil",
        image="margherita.jpg",
        base_price=Decimal("299"),
        category="veg",
        ingredients=["tomato", "mozzarella", "basil"],
        sizes=[
            PizzaSize(name="small", diameter="8 inch", price_multiplier=Decimal("1")),
            PizzaSize(name="medium", diameter="10 inch", price_multiplier=Decimal("1.3")),
            PizzaSize(name="large", diameter="12 inch", price_multiplier=Decimal("1.6")),
        ],
    )
    pepperoni = Pizza(
        id=PEPPERONI_ID,
        name="Pepperoni",
        description="Pepperoni and cheese",
        base_price=Decimal("349"),
        category="non-veg",
        ingredients=[],
        sizes=[PizzaSize(name="medium", price_multiplier=Decimal("1.25"))],
    )
    return [
        User(id=CUSTOMER_ID, email="customer@example.com", first_name="Asha", last_name="Rao", role="customer"),
        User(id=OTHER_CUSTOMER_ID, email="other@example.com", first_name="Ben", role="customer"),
        User(id=STAFF_ID, email="staff@example.com", first_name="Chef", role="admin"),
        margherita,
        pepperoni,
    ]


async def seed(session_factory) -> None:
    async with session_factory() as session:
        session.add_all(seed_rows())
        await session.commit()


def order_payload(**overrides) -> dict:
    payload = {
        "cartItems": [
            {"pizza_id": MARGHERITA_ID, "name": "Margherita", "size": "medium", "quantity": 2, "price": 1},
        ],
        "deliveryAddress": {"street": "12 MG Road", "city": "Pune", "zipCode": "411001"},
        "paymentMethod": "cod",
        "totalAmount": 1,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def redis():
    return fake_aioredis.FakeRedis(decode_responses=True)


@pytest.fixture
async def app(settings, redis):
    application = create_app(settings, redis=redis)
    await init_db(application.state.engine)
    await seed(application.state.session_factory)
    yield application
    await application.state.effects.notifier.drain()
    await application.state.hub.close_all()
    await application.state.engine.dispose()


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def customer_headers():
    return auth_header(CUSTOMER_ID)


@pytest.fixture
def staff_headers():
    return auth_header(STAFF_ID)
