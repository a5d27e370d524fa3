from sqlalchemy import BigInteger, Boolean, CheckConstraint, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from pegledger.db.base import Base

class PegEvent(Base):
    """One peg-in (positive amount) or peg-out (negative amount) seen on the side chain."""

    __tablename__ = "peg_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    side_height: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    side_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount_sat: Mapped[int] = mapped_column(BigInteger, nullable=False)
    side_txid: Mapped[str] = mapped_column(String(64), nullable=False)
    side_output_index: Mapped[int] = mapped_column(Integer, nullable=False)
    base_address: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    base_txid: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    base_output_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    base_height: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    base_time: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    is_final: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint('side_txid', 'side_output_index', name='uq_peg_events_side_outpoint'),
        CheckConstraint('amount_sat <> 0', name='chk_peg_events_amount_nonzero'),
        Index('ix_peg_events_side_time', 'side_time'),
    )
