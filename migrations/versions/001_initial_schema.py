"""Initial peg ledger schema

Revision ID: 001
Revises: 
Create Date: 2026-10-19

Peg events, federation addresses, federation UTXOs and the two progress cursors.
"""
import os
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # === PEG EVENTS ===
    op.create_table(
        'peg_events',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('side_height', sa.Integer, nullable=False),
        sa.Column('side_time', sa.BigInteger, nullable=False),
        sa.Column('amount_sat', sa.BigInteger, nullable=False),
        sa.Column('side_txid', sa.String(64), nullable=False),
        sa.Column('side_output_index', sa.Integer, nullable=False),
        sa.Column('base_address', sa.String(128), nullable=False, server_default=''),
        sa.Column('base_txid', sa.String(64), nullable=False, server_default=''),
        sa.Column('base_output_index', sa.Integer, nullable=False, server_default='0'),
        sa.Column('base_height', sa.Integer, nullable=False, server_default='0'),
        sa.Column('base_time', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('is_final', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.UniqueConstraint('side_txid', 'side_output_index', name='uq_peg_events_side_outpoint'),
        sa.CheckConstraint('amount_sat <> 0', name='chk_peg_events_amount_nonzero'),
    )
    op.create_index('ix_peg_events_side_height', 'peg_events', ['side_height'])
    op.create_index('ix_peg_events_side_time', 'peg_events', ['side_time'])

    # === FEDERATION ADDRESSES ===
    op.create_table(
        'federation_addresses',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('address', sa.String(128), nullable=False, unique=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # === FEDERATION UTXOS ===
    op.create_table(
        'federation_utxos',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('txid', sa.String(64), nullable=False),
        sa.Column('output_index', sa.Integer, nullable=False),
        sa.Column('address', sa.String(128), nullable=False, server_default=''),
        sa.Column('amount_sat', sa.BigInteger, nullable=False),
        sa.Column('created_height', sa.Integer, nullable=False),
        sa.Column('created_time', sa.BigInteger, nullable=False),
        sa.Column('unspent', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('last_verified_height', sa.Integer, nullable=False),
        sa.Column('spent_time', sa.BigInteger, nullable=False, server_default='0'),
        sa.UniqueConstraint('txid', 'output_index', name='uq_federation_utxos_outpoint'),
        sa.CheckConstraint('amount_sat >= 0', name='chk_federation_utxos_amount_non_negative'),
    )
    op.create_index('ix_federation_utxos_address', 'federation_utxos', ['address'])
    op.create_index(
        'ix_federation_utxos_unspent_verified', 'federation_utxos', ['unspent', 'last_verified_height']
    )

    # === PROGRESS ===
    progress = op.create_table(
        'progress',
        sa.Column('name', sa.String(64), primary_key=True),
        sa.Column('value', sa.BigInteger, nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.bulk_insert(
        progress,
        [
            {'name': 'last_side_chain_height', 'value': int(os.getenv('PEG_SCANNER_START_HEIGHT', '0'))},
            {'name': 'last_base_chain_audit_height', 'value': int(os.getenv('AUDIT_START_HEIGHT', '0'))},
        ],
    )


def downgrade() -> None:
    op.drop_table('progress')
    op.drop_index('ix_federation_utxos_unspent_verified', table_name='federation_utxos')
    op.drop_index('ix_federation_utxos_address', table_name='federation_utxos')
    op.drop_table('federation_utxos')
    op.drop_table('federation_addresses')
    op.drop_index('ix_peg_events_side_time', table_name='peg_events')
    op.drop_index('ix_peg_events_side_height', table_name='peg_events')
    op.drop_table('peg_events')
