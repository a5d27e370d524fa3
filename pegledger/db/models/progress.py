from sqlalchemy import BigInteger, DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column
from pegledger.db.base import Base

LAST_SIDE_CHAIN_HEIGHT = "last_side_chain_height"
LAST_BASE_CHAIN_AUDIT_HEIGHT = "last_base_chain_audit_height"


class Progress(Base):
    __tablename__ = "progress"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
