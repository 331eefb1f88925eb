"""SQLAlchemy model for per-user exchange statistics."""

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from ..db.models import Base, utcnow_iso


class UserStats(Base):
    """Exchange counters for one user profile."""

    __tablename__ = "user_stats"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)

    books_given: Mapped[int] = mapped_column(Integer, default=0)
    books_received: Mapped[int] = mapped_column(Integer, default=0)
    books_loaned: Mapped[int] = mapped_column(Integer, default=0)
    books_borrowed: Mapped[int] = mapped_column(Integer, default=0)
    books_traded: Mapped[int] = mapped_column(Integer, default=0)
    bookshares: Mapped[int] = mapped_column(Integer, default=0)

    updated_at: Mapped[str] = mapped_column(
        String(32), default=utcnow_iso, onupdate=utcnow_iso
    )

    def __repr__(self) -> str:
        return f"<UserStats(user_id={self.user_id}, bookshares={self.bookshares})>"
