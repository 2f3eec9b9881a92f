"""Tests for guest account resolution."""

import pytest

from errors import ClientError
from schemas.commerce import GuestUserData, ShippingDetails, UserRole, UserStatus
from services.user_identification import (
    UserIdentificationService,
    generate_temporary_password,
    pwd_context,
)
from storage.repositories import InMemoryUserRepository


@pytest.fixture
def users():
    return InMemoryUserRepository()


@pytest.fixture
def identity(users):
    return UserIdentificationService(users)


def guest(**overrides):
    data = {"email": "sam@example.com", "first_name": "Sam", "last_name": "Lee"}
    data.update(overrides)
    return GuestUserData(**data)


class TestGuestUsers:
    async def test_creates_active_customer(self, identity, users):
        user = await identity.find_or_create_guest_user(guest(email="  Sam@Example.COM "))

        assert user.email == "sam@example.com"
        assert user.role == UserRole.CUSTOMER
        assert user.status == UserStatus.ACTIVE
        assert user.notifications_enabled is True
        assert user.marketing_enabled is False
        stored = await users.get(user.id)
        assert stored.password_hash
        assert pwd_context.identify(stored.password_hash) == "pbkdf2_sha256"

    async def test_repeat_checkout_updates_only_provided_fields(self, identity):
        first = await identity.find_or_create_guest_user(guest(phone="555-0100", city="Austin"))
        second = await identity.find_or_create_guest_user(guest(city="Denver"))

        assert second.id == first.id
        assert second.city == "Denver"
        assert second.phone == "555-0100"

    async def test_invalid_email(self, identity):
        with pytest.raises(ClientError, match="Invalid email address"):
            await identity.find_or_create_guest_user(guest(email="not-an-email"))

    async def test_active_lookup(self, identity):
        await identity.find_or_create_guest_user(guest())

        assert await identity.is_user_active_by_email("SAM@example.com") is True
        assert await identity.is_user_active_by_email("nobody@example.com") is False

    def test_guest_from_shipping(self, identity):
        shipping = ShippingDetails(
            first_name="Sam",
            last_name="Lee",
            email="sam@example.com",
            address="9 Elm St",
            city="Austin",
            state="TX",
            zip_code="73301",
            country="US",
        )

        data = identity.create_guest_user_from_shipping(shipping)

        assert data.street == "9 Elm St"
        assert data.zip_code == "73301"

    async def test_order_count_without_order_repository(self, identity):
        assert await identity.get_user_order_count("anyone") == 0


class TestHelpers:
    def test_temporary_password(self):
        password = generate_temporary_password()
        assert len(password) == 12
        assert password.isalnum()

    @pytest.mark.parametrize("email,expected", [
        ("a@b.co", True),
        ("first.last@shop.example", True),
        ("missing-at.example.com", False),
        ("spaces in@example.com", False),
        ("", False),
    ])
    def test_validate_email(self, identity, email, expected):
        assert identity.validate_email(email) is expected
