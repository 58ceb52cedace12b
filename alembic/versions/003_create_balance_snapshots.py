"""003: create balance_snapshots table

Revision ID: 003
Revises: 002
Create Date: 2026-10-10
"""
from typing import Sequence, Union
from alembic import op

revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE balance_snapshots (
            id                BIGSERIAL     PRIMARY KEY,
            watched_pair_id   UUID          NOT NULL REFERENCES watched_pairs (id),
            account_address   VARCHAR(128)  NOT NULL,
            token_address     VARCHAR(128)  NOT NULL,
            balance           VARCHAR(80)   NOT NULL,
            block_number      BIGINT,
            observed_at       TIMESTAMPTZ   NOT NULL,
            created_at        TIMESTAMPTZ   NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_balance_snapshots_digits CHECK (balance ~ '^[0-9]+$')
        );
    """)
    op.execute("""
        CREATE INDEX idx_snapshots_account_token_time
        ON balance_snapshots (account_address, token_address, observed_at DESC);
    """)
    op.execute("CREATE INDEX idx_snapshots_pair ON balance_snapshots (watched_pair_id);")
    op.execute(
        "COMMENT ON TABLE balance_snapshots IS "
        "'Balance observations — Append-Only, never updated or deleted';"
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS balance_snapshots CASCADE;")
