"""002: create watched_pairs table

Revision ID: 002
Revises: 001
Create Date: 2026-10-10
"""
from typing import Sequence, Union
from alembic import op

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE watched_pairs (
            id                  UUID          PRIMARY KEY DEFAULT gen_random_uuid(),
            account_address     VARCHAR(128)  NOT NULL,
            token_address       VARCHAR(128)  NOT NULL,
            network             VARCHAR(20)   NOT NULL DEFAULT 'mainnet',
            token_name          VARCHAR(200)  NOT NULL,
            token_symbol        VARCHAR(50)   NOT NULL,
            token_decimals      INTEGER       NOT NULL DEFAULT 18,
            latest_balance      VARCHAR(80),
            last_refreshed_at   TIMESTAMPTZ,
            is_fungible         BOOLEAN       NOT NULL DEFAULT TRUE,
            is_nft              BOOLEAN       NOT NULL DEFAULT FALSE,
            is_favorite         BOOLEAN       NOT NULL DEFAULT FALSE,
            metadata            JSONB         NOT NULL DEFAULT '{}'::jsonb,
            created_at          TIMESTAMPTZ   NOT NULL DEFAULT NOW(),
            updated_at          TIMESTAMPTZ   NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_watched_pairs_account_token_network
                UNIQUE (account_address, token_address, network),
            CONSTRAINT ck_watched_pairs_network CHECK (
                network IN ('mainnet', 'testnet', 'devnet')
            ),
            CONSTRAINT ck_watched_pairs_decimals_gte_0 CHECK (token_decimals >= 0),
            CONSTRAINT ck_watched_pairs_balance_digits CHECK (
                latest_balance IS NULL OR latest_balance ~ '^[0-9]+$'
            )
        );
    """)
    op.execute("""
        CREATE TRIGGER trg_watched_pairs_updated_at
            BEFORE UPDATE ON watched_pairs
            FOR EACH ROW EXECUTE FUNCTION fn_touch_updated_at();
    """)
    # Reconciliation selects oldest-first
    op.execute(
        "CREATE INDEX idx_watched_pairs_refreshed ON watched_pairs (last_refreshed_at ASC NULLS FIRST);"
    )
    op.execute("CREATE INDEX idx_watched_pairs_account ON watched_pairs (account_address);")
    op.execute(
        "COMMENT ON TABLE watched_pairs IS "
        "'Latest known balance per (account, token, network) — balances in token base units';"
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS watched_pairs CASCADE;")
