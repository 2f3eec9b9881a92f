"""
User Identification
===================
Resolves the owning account for a checkout from its shipping contact data.

Guests are created on first purchase with a random temporary password
(only its hash is stored). A repeat purchase by the same email updates
contact fields in place, and only with values that were actually provided.
"""

import re
import secrets
import string
from typing import Optional

import structlog
from passlib.context import CryptContext

from errors import ClientError
from schemas.commerce import GuestUserData, ShippingDetails, User, UserRole, UserStatus
from storage.repositories import IOrderRepository, IUserRepository

logger = structlog.get_logger().bind(component="user_identification")

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PASSWORD_ALPHABET = string.ascii_letters + string.digits
TEMPORARY_PASSWORD_LENGTH = 12

# Contact fields a repeat checkout may refresh
_CONTACT_FIELDS = ("phone", "street", "city", "state", "zip_code", "country")


def generate_temporary_password(length: int = TEMPORARY_PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


class UserIdentificationService:

    def __init__(self, users: IUserRepository, orders: Optional[IOrderRepository] = None):
        self.users = users
        self.orders = orders

    async def find_or_create_guest_user(self, guest: GuestUserData) -> User:
        email = guest.email.strip().lower()
        if not self.validate_email(email):
            raise ClientError(f"Invalid email address: {guest.email}")

        user = await self.users.get_by_email(email)
        if user is not None:
            user = await self._update_user_info(user, guest)
            logger.info("user_found", user_id=user.id)
            return user

        user = await self._create_guest_user(guest.model_copy(update={"email": email}))
        logger.info("guest_user_created", user_id=user.id)
        return user

    async def _create_guest_user(self, guest: GuestUserData) -> User:
        user = User(
            email=guest.email,
            first_name=guest.first_name,
            last_name=guest.last_name,
            password_hash=pwd_context.hash(generate_temporary_password()),
            role=UserRole.CUSTOMER,
            status=UserStatus.ACTIVE,
            phone=guest.phone,
            street=guest.street,
            city=guest.city,
            state=guest.state,
            zip_code=guest.zip_code,
            country=guest.country,
            notifications_enabled=True,
            marketing_enabled=False,
        )
        return await self.users.create(user)

    async def _update_user_info(self, user: User, guest: GuestUserData) -> User:
        changes = {}
        if guest.first_name:
            changes["first_name"] = guest.first_name
        if guest.last_name:
            changes["last_name"] = guest.last_name
        for field in _CONTACT_FIELDS:
            value = getattr(guest, field)
            if value:
                changes[field] = value
        if not changes:
            return user
        return await self.users.update(user.model_copy(update=changes))

    def create_guest_user_from_shipping(self, shipping: ShippingDetails) -> GuestUserData:
        return GuestUserData(
            email=shipping.email,
            first_name=shipping.first_name,
            last_name=shipping.last_name,
            phone=shipping.phone,
            street=shipping.address,
            city=shipping.city,
            state=shipping.state,
            zip_code=shipping.zip_code,
            country=shipping.country,
        )

    async def find_by_email(self, email: str) -> Optional[User]:
        return await self.users.get_by_email(email.strip().lower())

    async def find_by_id(self, user_id: str) -> Optional[User]:
        return await self.users.get(user_id)

    def validate_email(self, email: str) -> bool:
        return bool(EMAIL_PATTERN.match(email or ""))

    async def is_user_active_by_email(self, email: str) -> bool:
        user = await self.find_by_email(email)
        return user is not None and user.status == UserStatus.ACTIVE

    async def get_user_order_count(self, user_id: str) -> int:
        if self.orders is None:
            return 0
        return await self.orders.count_by_user(user_id)
