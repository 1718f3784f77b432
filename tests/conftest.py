import os
from uuid import uuid4

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from loyalty_admin.data_service import DataService
from loyalty_admin.db import Base
from loyalty_admin.exceptions import DataServiceError
from loyalty_admin.models import DEFAULT_RESTAURANT_SETTINGS, DEFAULT_ROI_SETTINGS
from loyalty_admin.realtime import ChangeFeed


def make_data_service() -> DataService:
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(
        bind=engine, autoflush=False, autocommit=False, expire_on_commit=False
    )
    Base.metadata.create_all(bind=engine)
    return DataService(TestingSessionLocal, ChangeFeed())


class Seeder:
    def __init__(self, data: DataService):
        self.data = data

    def restaurant(self, name: str = "Saffron House", **fields) -> dict:
        values = {
            "name": name,
            "slug": f"{name.lower().replace(' ', '-')}-{uuid4().hex[:8]}",
            "settings": DEFAULT_RESTAURANT_SETTINGS,
            "roi_settings": DEFAULT_ROI_SETTINGS,
        }
        values.update(fields)
        return self.data.table("restaurants").insert(values)[0]

    def customer(self, restaurant_id: str, first_name: str = "Amira", **fields) -> dict:
        values = {
            "restaurant_id": restaurant_id,
            "first_name": first_name,
            "last_name": "Khan",
            "email": f"{first_name.lower()}@example.com",
        }
        values.update(fields)
        return self.data.table("customers").insert(values)[0]

    def transaction(self, restaurant_id: str, customer_id: str, type: str = "purchase", points: int = 0, **fields) -> dict:
        values = {
            "restaurant_id": restaurant_id,
            "customer_id": customer_id,
            "type": type,
            "points": points,
        }
        values.update(fields)
        return self.data.table("transactions").insert(values)[0]

    def ticket(self, restaurant_id: str, subject: str = "Points not credited", **fields) -> dict:
        values = {"restaurant_id": restaurant_id, "subject": subject, "description": "Details"}
        values.update(fields)
        return self.data.table("support_tickets").insert(values)[0]


class FailingDataService:
    """Stands in for an unreachable data store: every call raises."""

    def __init__(self):
        self.feed = ChangeFeed()
        self.auth = self

    def table(self, name: str):
        raise DataServiceError("connection refused", table=name)

    def rpc(self, name: str, **params):
        raise DataServiceError("connection refused", procedure=name)

    def create_user(self, *args, **kwargs):
        raise DataServiceError("connection refused", table="users")

    def get_user_by_id(self, user_id: str):
        raise DataServiceError("connection refused", table="users")

    def delete_user(self, user_id: str):
        raise DataServiceError("connection refused", table="users")


@pytest.fixture
def data_service() -> DataService:
    return make_data_service()


@pytest.fixture
def seed(data_service) -> Seeder:
    return Seeder(data_service)


@pytest.fixture
def failing_data() -> FailingDataService:
    return FailingDataService()
