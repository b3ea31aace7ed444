"""create_documents_table

Revision ID: a7c1e2d3b4f5
Revises:
Create Date: 2026-10-19 10:12:31.402118

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'a7c1e2d3b4f5'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table('documents',
    sa.Column('collection', sa.String(length=256), nullable=False),
    sa.Column('id', sa.String(length=64), nullable=False),
    sa.Column('data', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    sa.PrimaryKeyConstraint('collection', 'id'),
    schema='bugtracker'
    )
    op.create_index('idx_documents_data', 'documents', ['data'], unique=False, schema='bugtracker', postgresql_using='gin')
    op.execute("""
        CREATE OR REPLACE FUNCTION bugtracker.documents_notify()
        RETURNS trigger AS $$
        DECLARE
            rec RECORD;
        BEGIN
            IF TG_OP = 'DELETE' THEN
                rec := OLD;
            ELSE
                rec := NEW;
            END IF;
            PERFORM pg_notify(
                'bugtracker_documents',
                json_build_object('collection', rec.collection, 'id', rec.id, 'op', lower(TG_OP))::text
            );
            RETURN rec;
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute("""
        CREATE TRIGGER trg_documents_notify
        AFTER INSERT OR UPDATE OR DELETE ON bugtracker.documents
        FOR EACH ROW
        EXECUTE FUNCTION bugtracker.documents_notify()
    """)


def downgrade() -> None:
    """Downgrade schema."""
    op.execute("DROP TRIGGER IF EXISTS trg_documents_notify ON bugtracker.documents")
    op.execute("DROP FUNCTION IF EXISTS bugtracker.documents_notify()")
    op.drop_index('idx_documents_data', table_name='documents', schema='bugtracker', postgresql_using='gin')
    op.drop_table('documents', schema='bugtracker')
