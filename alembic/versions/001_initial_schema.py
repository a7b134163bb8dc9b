"""Initial schema for the campus transport document store

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ==========================================================================
    # DOCUMENTS (buses, drivers, routes, students, reassignment logs and heads)
    # ==========================================================================
    op.execute("""
        CREATE TABLE documents (
            collection VARCHAR(64) NOT NULL,
            doc_id VARCHAR(255) NOT NULL,
            data JSONB NOT NULL,
            version INTEGER NOT NULL DEFAULT 1 CHECK (version >= 1),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            PRIMARY KEY (collection, doc_id)
        )
    """)
    op.execute("CREATE INDEX idx_documents_updated_at ON documents(collection, updated_at DESC)")

    # Audit log filters
    op.execute("""
        CREATE INDEX idx_documents_log_type ON documents((data->>'type'))
            WHERE collection = 'reassignment_logs'
    """)
    op.execute("""
        CREATE INDEX idx_documents_log_status ON documents((data->>'status'))
            WHERE collection = 'reassignment_logs'
    """)

    # Students are counted per bus during reconciliation
    op.execute("""
        CREATE INDEX idx_documents_student_bus ON documents((data->>'bus_id'))
            WHERE collection = 'students'
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION update_updated_at_column()
        RETURNS TRIGGER AS $$
        BEGIN
            NEW.updated_at = NOW();
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute("""
        CREATE TRIGGER tr_documents_updated_at BEFORE UPDATE ON documents
            FOR EACH ROW EXECUTE FUNCTION update_updated_at_column()
    """)


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS tr_documents_updated_at ON documents")
    op.execute("DROP FUNCTION IF EXISTS update_updated_at_column()")
    op.execute("DROP TABLE IF EXISTS documents")
