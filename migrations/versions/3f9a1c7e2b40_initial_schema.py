"""initial_schema

Revision ID: 3f9a1c7e2b40
Revises:
Create Date: 2026-10-18 09:12:44.512093+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f9a1c7e2b40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # 1. projects (projection of the project registry)
    op.create_table('projects',
    sa.Column('id', sa.Uuid(), nullable=False),
    sa.Column('code', sa.String(length=50), nullable=True),
    sa.Column('name', sa.String(length=200), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('code')
    )
    op.create_index('idx_projects_code', 'projects', ['code'], unique=False)

    # 2. purchase_requests
    op.create_table('purchase_requests',
    sa.Column('id', sa.Uuid(), nullable=False),
    sa.Column('pr_number', sa.String(length=50), nullable=False),
    sa.Column('seq_year', sa.Integer(), nullable=False),
    sa.Column('seq_no', sa.Integer(), nullable=False),
    sa.Column('project_id', sa.Uuid(), nullable=False),
    sa.Column('pr_type', sa.String(length=50), nullable=False),
    sa.Column('title', sa.String(length=200), nullable=False),
    sa.Column('description', sa.Text(), nullable=True),
    sa.Column('required_by', sa.Date(), nullable=True),
    sa.Column('priority', sa.String(length=20), nullable=False),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('current_stage', sa.String(length=50), nullable=True),
    sa.Column('total_amount', sa.Numeric(precision=20, scale=4), nullable=False),
    sa.Column('version', sa.Integer(), nullable=False),
    sa.Column('created_by', sa.String(length=64), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.CheckConstraint(
        "(status = 'pending' AND current_stage IS NOT NULL) OR "
        "(status IN ('approved', 'rejected') AND current_stage IS NULL)",
        name='chk_pr_status_stage'),
    sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('pr_number'),
    sa.UniqueConstraint('seq_year', 'seq_no', name='uq_pr_sequence')
    )
    op.create_index('idx_pr_project', 'purchase_requests', ['project_id'], unique=False)
    op.create_index('idx_pr_status_stage', 'purchase_requests', ['status', 'current_stage'], unique=False)
    op.create_index('idx_pr_created_by', 'purchase_requests', ['created_by'], unique=False)

    # 3. pr_items
    op.create_table('pr_items',
    sa.Column('id', sa.Uuid(), nullable=False),
    sa.Column('pr_id', sa.Uuid(), nullable=False),
    sa.Column('line_number', sa.Integer(), nullable=False),
    sa.Column('material_id', sa.String(length=64), nullable=False),
    sa.Column('quantity', sa.Numeric(precision=15, scale=2), nullable=False),
    sa.Column('unit', sa.String(length=30), nullable=False),
    sa.Column('estimated_unit_price', sa.Numeric(precision=15, scale=2), nullable=False),
    sa.Column('vendor', sa.String(length=200), nullable=True),
    sa.Column('notes', sa.Text(), nullable=True),
    sa.CheckConstraint('quantity > 0', name='chk_pr_item_qty'),
    sa.CheckConstraint('estimated_unit_price >= 0', name='chk_pr_item_price'),
    sa.ForeignKeyConstraint(['pr_id'], ['purchase_requests.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('pr_id', 'line_number', name='uq_pr_item_line')
    )
    op.create_index('idx_pr_items_pr', 'pr_items', ['pr_id'], unique=False)

    # 4. pr_approval_history (append-only, one row per decided stage)
    op.create_table('pr_approval_history',
    sa.Column('id', sa.Uuid(), nullable=False),
    sa.Column('pr_id', sa.Uuid(), nullable=False),
    sa.Column('stage', sa.String(length=50), nullable=False),
    sa.Column('stage_index', sa.Integer(), nullable=False),
    sa.Column('actor_ref', sa.String(length=64), nullable=False),
    sa.Column('decision', sa.String(length=20), nullable=False),
    sa.Column('comment', sa.Text(), nullable=True),
    sa.Column('decided_at', sa.DateTime(), nullable=False),
    sa.CheckConstraint('stage_index >= 0', name='chk_pr_history_index'),
    sa.ForeignKeyConstraint(['pr_id'], ['purchase_requests.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('pr_id', 'stage', name='uq_pr_history_stage')
    )
    op.create_index('idx_pr_history_pr', 'pr_approval_history', ['pr_id', 'stage_index'], unique=False)

    # 5. pr_comments
    op.create_table('pr_comments',
    sa.Column('id', sa.Uuid(), nullable=False),
    sa.Column('pr_id', sa.Uuid(), nullable=False),
    sa.Column('author_ref', sa.String(length=64), nullable=False),
    sa.Column('text', sa.Text(), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.ForeignKeyConstraint(['pr_id'], ['purchase_requests.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_pr_comments_pr', 'pr_comments', ['pr_id', 'created_at'], unique=False)


def downgrade() -> None:
    op.drop_index('idx_pr_comments_pr', table_name='pr_comments')
    op.drop_table('pr_comments')
    op.drop_index('idx_pr_history_pr', table_name='pr_approval_history')
    op.drop_table('pr_approval_history')
    op.drop_index('idx_pr_items_pr', table_name='pr_items')
    op.drop_table('pr_items')
    op.drop_index('idx_pr_created_by', table_name='purchase_requests')
    op.drop_index('idx_pr_status_stage', table_name='purchase_requests')
    op.drop_index('idx_pr_project', table_name='purchase_requests')
    op.drop_table('purchase_requests')
    op.drop_index('idx_projects_code', table_name='projects')
    op.drop_table('projects')
