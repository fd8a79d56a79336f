from __future__ import annotations

from datetime import datetime
from decimal import Decimal

import pytest

from rental_finance import create_app
from rental_finance.extensions import db
from rental_finance.models import (
    Booking,
    InvestorProfile,
    User,
    Vehicle,
)
from rental_finance.seed import seed_defaults

PASSWORD = "secret-pass"


@pytest.fixture
def app():
    app = create_app("config.TestConfig")
    with app.app_context():
        db.create_all()
        seed_defaults()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def _user(username, role, name=None):
    user = User(username=username, name=name or username.title(), role=role, is_active=True)
    user.set_password(PASSWORD)
    db.session.add(user)
    return user


@pytest.fixture
def users(app):
    accounts = {
        "admin": _user("admin", "SUPER_ADMIN"),
        "finance": _user("finance", "FINANCE"),
        "staff": _user("staff", "STAFF", name="Sam Staff"),
        "investor": _user("investor", "INVESTOR", name="Ivy Investor"),
        "other_investor": _user("other", "INVESTOR", name="Oscar Other"),
    }
    db.session.commit()
    return accounts


@pytest.fixture
def investors(users):
    profiles = {
        "investor": InvestorProfile(user_id=users["investor"].id),
        "other_investor": InvestorProfile(user_id=users["other_investor"].id, commission_percent=Decimal("25")),
    }
    db.session.add_all(profiles.values())
    db.session.commit()
    return profiles


@pytest.fixture
def make_vehicle(app):
    def factory(plate, daily_rate="200", investor=None, **extra):
        vehicle = Vehicle(
            plate_number=plate,
            brand=extra.pop("brand", "Toyota"),
            model=extra.pop("model", "Corolla"),
            category=extra.pop("category", "ECONOMY"),
            ownership_type="INVESTOR" if investor is not None else "COMPANY",
            investor_id=investor.id if investor is not None else None,
            daily_rate=Decimal(daily_rate),
            **extra,
        )
        db.session.add(vehicle)
        db.session.commit()
        return vehicle

    return factory


@pytest.fixture
def make_booking(app):
    def factory(vehicle, start, end=None, status="CONFIRMED", **extra):
        booking = Booking(
            vehicle_id=vehicle.id,
            customer_name=extra.pop("customer_name", "Jane Customer"),
            start_datetime=start,
            end_datetime=end,
            status=status,
            rental_type=extra.pop("rental_type", "DAILY"),
            discounts=Decimal(extra.pop("discounts", "0")),
            deposit_amount=Decimal(extra.pop("deposit_amount", "0")),
            total_amount=Decimal(extra.pop("total_amount", "0")),
            **extra,
        )
        db.session.add(booking)
        db.session.commit()
        return booking

    return factory


@pytest.fixture
def booking(make_vehicle, make_booking):
    vehicle = make_vehicle("DXB 1001")
    return make_booking(
        vehicle,
        datetime(2024, 1, 1, 10, 0),
        datetime(2024, 1, 4, 10, 0),
        discounts="50",
        deposit_amount="300",
        pickup_branch="DXB",
    )


@pytest.fixture
def login(client, users):
    def do_login(username):
        response = client.post("/auth/login", json={"username": username, "password": PASSWORD})
        assert response.status_code == 200, response.get_json()
        return response

    return do_login
