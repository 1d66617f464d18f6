"""
Module: fiscal_kernel.models.sequence_counter
Responsibility: One locked counter row per sequence namespace
    ("invoice", "item_code:KG", ...).
Architecture position: Kernel > Models.  May import from db/base.py only.
"""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from fiscal_kernel.db.base import Base


class SequenceCounter(Base):
    """
    Sequence counter table.

    current_value is the last value handed out in the namespace.  Row-level
    locking on this row serializes concurrent reservations.
    """

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<SequenceCounter {self.name}={self.current_value}>"
