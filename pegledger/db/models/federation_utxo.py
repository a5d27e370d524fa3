from sqlalchemy import BigInteger, Boolean, CheckConstraint, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from pegledger.db.base import Base

class FederationUtxo(Base):
    """A base-chain output held (or once held) by the federation.

    `last_verified_height` is the highest base-chain height at which the
    spent/unspent state of this output is known to be correct.
    """

    __tablename__ = "federation_utxos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    txid: Mapped[str] = mapped_column(String(64), nullable=False)
    output_index: Mapped[int] = mapped_column(Integer, nullable=False)
    address: Mapped[str] = mapped_column(String(128), nullable=False, default="", index=True)
    amount_sat: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_height: Mapped[int] = mapped_column(Integer, nullable=False)
    created_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    unspent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_verified_height: Mapped[int] = mapped_column(Integer, nullable=False)
    spent_time: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint('txid', 'output_index', name='uq_federation_utxos_outpoint'),
        CheckConstraint('amount_sat >= 0', name='chk_federation_utxos_amount_non_negative'),
        Index('ix_federation_utxos_unspent_verified', 'unspent', 'last_verified_height'),
    )
