"""create unified consumption_entries and daily_summaries

Revision ID: create_consumption_entries
Revises:
Create Date: 2026-10-16

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'create_consumption_entries'
down_revision = None
branch_labels = None
depends_on = None

NUTRIENT_COLUMNS = (
    'calories', 'protein', 'carbs', 'fat', 'fiber', 'sugar', 'sodium',
    'cholesterol', 'saturated_fat', 'trans_fat',
)


def upgrade():
    """
    Create the unified consumption table next to legacy_consumption_entries.
    Existing rows are moved by scripts/migrate_consumption.py, not here.
    """
    op.create_table(
        'consumption_entries',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('item_type', sa.String(10), nullable=False),
        sa.Column('item_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Float(), nullable=True),
        sa.Column('unit', sa.String(10), nullable=True),
        sa.Column('servings', sa.Float(), nullable=True),
        sa.Column('meal_type', sa.String(20), nullable=True),
        sa.Column('consumed_at', sa.DateTime(), nullable=False),
        sa.Column('entry_method', sa.String(20), nullable=True),
        *[sa.Column(name, sa.Float(), nullable=True) for name in NUTRIENT_COLUMNS],
        sa.Column('calculated_at', sa.DateTime(), nullable=True),
        sa.Column('calculation_source', sa.String(30), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('context', sa.JSON(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('deleted_by', sa.Integer(), nullable=True),
        sa.Column('last_modified', sa.JSON(), nullable=True),
        sa.Column('is_duplicate', sa.Boolean(), nullable=True),
        sa.Column('original_entry_id', sa.Integer(),
                  sa.ForeignKey('consumption_entries.id', ondelete='SET NULL'), nullable=True),
        sa.Column('quality_score', sa.Float(), nullable=True),
        sa.Column('is_verified', sa.Boolean(), nullable=True),
        sa.Column('needs_review', sa.Boolean(), nullable=True),
        sa.Column('versions', sa.JSON(), nullable=True),
        sa.Column('original_id', sa.Integer(), nullable=True, unique=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            "(item_type = 'food' AND quantity IS NOT NULL AND unit IS NOT NULL AND servings IS NULL) OR "
            "(item_type = 'recipe' AND servings IS NOT NULL AND quantity IS NULL AND unit IS NULL)",
            name='ck_consumption_entries_item_payload'
        ),
        sa.CheckConstraint('calories >= 0', name='ck_consumption_entries_calories'),
    )

    # Composite indexes for per-user date range reads
    op.create_index('idx_consumption_user_date', 'consumption_entries', ['user_id', 'consumed_at'])
    op.create_index('idx_consumption_user_deleted_date', 'consumption_entries',
                    ['user_id', 'is_deleted', 'consumed_at'])
    op.create_index('idx_consumption_item', 'consumption_entries', ['item_type', 'item_id'])
    op.create_index('ix_consumption_entries_user_id', 'consumption_entries', ['user_id'])
    op.create_index('ix_consumption_entries_meal_type', 'consumption_entries', ['meal_type'])
    op.create_index('ix_consumption_entries_entry_method', 'consumption_entries', ['entry_method'])

    op.create_table(
        'daily_summaries',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('total_nutrition', sa.JSON(), nullable=True),
        sa.Column('meal_breakdown', sa.JSON(), nullable=True),
        sa.Column('entries_count', sa.Integer(), nullable=True),
        sa.Column('unique_foods_count', sa.Integer(), nullable=True),
        sa.Column('goals', sa.JSON(), nullable=True),
        sa.Column('progress', sa.JSON(), nullable=True),
        sa.Column('last_calculated', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('user_id', 'date', name='uq_daily_summaries_user_date'),
    )
    op.create_index('ix_daily_summaries_user_id', 'daily_summaries', ['user_id'])
    op.create_index('ix_daily_summaries_date', 'daily_summaries', ['date'])


def downgrade():
    """
    Drop the unified tables. Legacy rows are untouched.
    """
    op.drop_index('ix_daily_summaries_date', table_name='daily_summaries')
    op.drop_index('ix_daily_summaries_user_id', table_name='daily_summaries')
    op.drop_table('daily_summaries')

    op.drop_index('ix_consumption_entries_entry_method', table_name='consumption_entries')
    op.drop_index('ix_consumption_entries_meal_type', table_name='consumption_entries')
    op.drop_index('ix_consumption_entries_user_id', table_name='consumption_entries')
    op.drop_index('idx_consumption_item', table_name='consumption_entries')
    op.drop_index('idx_consumption_user_deleted_date', table_name='consumption_entries')
    op.drop_index('idx_consumption_user_date', table_name='consumption_entries')
    op.drop_table('consumption_entries')
