"""Users and categories."""

from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.config import LedgerSettings, get_settings
from ledger_engine.exceptions import ConflictError, ValidationError
from ledger_engine.models.ledger import Category, User
from ledger_engine.storage.tables import CategoryRow, UserRow


class ProfileService:

    def __init__(self, settings: Optional[LedgerSettings] = None):
        self._settings = settings or get_settings().ledger
        self._logger = structlog.get_logger(__name__)

    async def create_user(
        self,
        session: AsyncSession,
        email: str,
        display_name: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> User:
        """
        Register a user.

        Raises:
            ValidationError: Blank email or unsupported currency
            ConflictError: Email already registered
        """
        email = (email or "").strip().lower()
        if not email:
            raise ValidationError("Email is required")
        currency = (currency or self._settings.default_currency).strip().upper()
        if currency not in self._settings.supported_currency_list:
            raise ValidationError(f"Unsupported currency: {currency!r}")

        existing = (await session.execute(
            select(UserRow.id).where(UserRow.email == email)
        )).scalar_one_or_none()
        if existing is not None:
            raise ConflictError(f"Email {email} is already registered", existing_id=existing)

        row = UserRow(email=email, display_name=display_name, currency=currency)
        session.add(row)
        await session.flush()
        self._logger.info("user_created", user_id=str(row.id), currency=currency)
        return User.model_validate(row)

    async def create_category(
        self,
        session: AsyncSession,
        name: str,
        user_id: Optional[UUID] = None,
    ) -> Category:
        """Create a category; without a user_id it is shared by everyone."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("Category name is required")
        row = CategoryRow(user_id=user_id, name=name)
        session.add(row)
        await session.flush()
        return Category.model_validate(row)

    async def list_categories(self, session: AsyncSession, user_id: UUID) -> list[Category]:
        """The user's own categories plus the shared defaults."""
        stmt = (
            select(CategoryRow)
            .where(or_(CategoryRow.user_id == user_id, CategoryRow.user_id.is_(None)))
            .order_by(CategoryRow.name)
        )
        return [Category.model_validate(row) for row in (await session.execute(stmt)).scalars()]
