"""
Database seed script: a demo store, ShipStation credentials, an operator token and sample orders.
"""
import sys
from datetime import timedelta
from decimal import Decimal

from app.auth import create_access_token
from app.database import SessionLocal, engine, Base
from app.models import CredentialScheme, Order, OrderItem, OrderStatus, Store, utcnow
from app.services.credentials import CredentialStore, SecretCipher

DEMO_STORE_NAME = "Demo Store"

SAMPLE_ORDERS = [
    {
        "order_number": "DEMO-1001",
        "customer_email": "ada@example.com",
        "items": [("TSHIRT-BLK-M", "Black T-Shirt (M)", 2, Decimal("19.99"))],
    },
    {
        "order_number": "DEMO-1002",
        "customer_email": "grace@example.com",
        "items": [
            ("MUG-WHT", "White Mug", 1, Decimal("9.50")),
            ("CAP-RED", "Red Cap", 1, Decimal("14.00")),
        ],
    },
]


def seed_database():
    """Seed the database with a demo store and sample data"""
    db = SessionLocal()

    try:
        store = db.query(Store).filter(Store.name == DEMO_STORE_NAME).first()
        if not store:
            store = Store(name=DEMO_STORE_NAME, is_active=True, integration_enabled=True)
            db.add(store)
            db.commit()
            print(f"✅ Created store: {store.name} ({store.id})")
        else:
            print(f"✅ Store already exists ({store.id})")

        now = utcnow()
        for offset, sample in enumerate(SAMPLE_ORDERS):
            existing = db.query(Order).filter(
                Order.store_id == store.id, Order.order_number == sample["order_number"]
            ).first()
            if existing:
                print(f"✅ Order {sample['order_number']} already exists")
                continue
            total = sum(price * qty for _, _, qty, price in sample["items"])
            order = Order(
                store_id=store.id,
                order_number=sample["order_number"],
                status=OrderStatus.CONFIRMED,
                customer_email=sample["customer_email"],
                shipping_address={
                    "name": sample["customer_email"].split("@")[0].title(),
                    "street": "1 Market St",
                    "city": "San Francisco",
                    "state": "CA",
                    "postal_code": "94105",
                    "country": "US",
                },
                shipping_method="Ground",
                total_amount=total,
                created_at=now - timedelta(hours=offset + 1),
                updated_at=now - timedelta(hours=offset + 1),
            )
            for position, (sku, name, qty, price) in enumerate(sample["items"]):
                order.items.append(OrderItem(position=position, sku=sku, name=name, quantity=qty, unit_price=price))
            db.add(order)
            print(f"✅ Created order: {sample['order_number']}")
        db.commit()

        credentials = CredentialStore(db, SecretCipher.from_settings())
        if credentials.get_active(store.id, CredentialScheme.API_KEY_SECRET) is None:
            generated = credentials.generate(store.id, CredentialScheme.API_KEY_SECRET)
            print("\n🔑 ShipStation Custom Store credentials (shown once):")
            print(f"   API key:    {generated.identifier}")
            print(f"   API secret: {generated.secret}")
        else:
            print("✅ ShipStation credentials already exist (rotate them via the operator API)")

        token = create_access_token({"sub": "seed-operator", "store_id": store.id})
        print("\n🎉 Seeding completed!")
        print("\n📝 Operator bearer token:")
        print(f"   {token}")

    except Exception as e:
        print(f"❌ Seeding failed: {e}")
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    print("🌱 Starting database seeding...")

    try:
        with engine.connect():
            print("✅ Database connection successful!")
    except Exception as e:
        print(f"❌ Database connection failed: {e}")
        print("💡 Check your DATABASE_URL in .env file")
        sys.exit(1)

    Base.metadata.create_all(bind=engine)
    seed_database()
