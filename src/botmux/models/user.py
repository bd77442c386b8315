import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from botmux.models.database import Base


class UnifiedUser(Base):
    """One person, possibly owning accounts on several platforms."""

    __tablename__ = "unified_users"

    id: Mapped[int] = mapped_column(primary_key=True)
    uid: Mapped[str] = mapped_column(
        String(36), unique=True, default=lambda: str(uuid.uuid4())
    )
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())

    accounts: Mapped[list["PlatformAccountLink"]] = relationship(
        back_populates="user",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="PlatformAccountLink.id",
    )

    @property
    def primary_account(self) -> "PlatformAccountLink | None":
        for account in self.accounts:
            if account.is_primary:
                return account
        return self.accounts[0] if self.accounts else None

    @property
    def display_name(self) -> str:
        primary = self.primary_account
        return primary.name if primary else ""

    @property
    def handle(self) -> str | None:
        primary = self.primary_account
        if not primary or primary.handle in ("", "@"):
            return None
        return primary.handle


class PlatformAccountLink(Base):
    __tablename__ = "platform_accounts"
    __table_args__ = (UniqueConstraint("platform", "account_id"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("unified_users.id"))
    platform: Mapped[str] = mapped_column(String(20))  # telegram | slack
    account_id: Mapped[str] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(200), default="")
    handle: Mapped[str] = mapped_column(String(100), default="")
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    user: Mapped["UnifiedUser"] = relationship(back_populates="accounts")
