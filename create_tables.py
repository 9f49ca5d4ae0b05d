"""
Create the gateway tables from SQLAlchemy models.
Useful for local SQLite databases; use `alembic upgrade head` against Postgres.
"""
from app.database import engine, Base
from app import models  # noqa: F401 - register all models with Base

Base.metadata.create_all(bind=engine)
print(f"Tables created (or already exist): {', '.join(sorted(Base.metadata.tables))}")
