"""initial fee engine tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Communes
    op.create_table(
        'communes',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(150), nullable=False),
        sa.Column('postal_code', sa.String(10), nullable=True),
    )
    op.create_table(
        'commune_groups',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(50), nullable=False, unique=True),
        sa.Column('name', sa.String(150), nullable=False),
    )
    op.create_table(
        'commune_group_members',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('group_id', sa.Integer(), nullable=False),
        sa.Column('commune_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['group_id'], ['commune_groups.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['commune_id'], ['communes.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('group_id', 'commune_id', name='uq_commune_group_member'),
    )

    # Members
    op.create_table(
        'members',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('first_name', sa.String(100), nullable=True),
        sa.Column('last_name', sa.String(100), nullable=False),
        sa.Column('birth_date', sa.Date(), nullable=True),
        sa.Column('household_id', sa.String(64), nullable=True),
        sa.Column('commune_id', sa.Integer(), nullable=True),
        sa.Column('income_quotient', sa.Integer(), nullable=True),
        sa.Column('social_status', sa.String(50), nullable=True),
        sa.Column('parent_id', sa.Integer(), nullable=True),
        sa.Column('membership_end_date', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['commune_id'], ['communes.id'], ),
        sa.ForeignKeyConstraint(['parent_id'], ['members.id'], ),
    )
    op.create_index('ix_members_household_id', 'members', ['household_id'])

    op.create_table(
        'income_quotient_history',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('member_id', sa.Integer(), nullable=False),
        sa.Column('value', sa.Integer(), nullable=False),
        sa.Column('valid_from', sa.Date(), nullable=False),
        sa.Column('valid_to', sa.Date(), nullable=True),
        sa.Column('source', sa.String(50), nullable=False, server_default='manual'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['member_id'], ['members.id'], ondelete='CASCADE'),
    )
    op.create_index('idx_income_quotient_member_dates', 'income_quotient_history', ['member_id', 'valid_from'])

    # Schedules and age brackets
    op.create_table(
        'age_brackets',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('label', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('min_age', sa.Integer(), nullable=True),
        sa.Column('max_age', sa.Integer(), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('structure_id', sa.Integer(), nullable=True),
        sa.UniqueConstraint('code', 'structure_id', name='uq_age_bracket_code_structure'),
    )
    op.create_index('ix_age_brackets_structure_id', 'age_brackets', ['structure_id'])

    op.create_table(
        'fee_schedules',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('label', sa.String(150), nullable=False),
        sa.Column('base_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('duration_months', sa.Integer(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('structure_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_fee_schedules_structure_id', 'fee_schedules', ['structure_id'])

    op.create_table(
        'fee_schedule_bracket_amounts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('schedule_id', sa.Integer(), nullable=False),
        sa.Column('age_bracket_id', sa.Integer(), nullable=False),
        sa.Column('base_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.ForeignKeyConstraint(['schedule_id'], ['fee_schedules.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['age_bracket_id'], ['age_brackets.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('schedule_id', 'age_bracket_id', name='uq_schedule_age_bracket'),
    )

    # Income brackets
    op.create_table(
        'income_bracket_configs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(50), nullable=False, unique=True),
        sa.Column('label', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('structure_id', sa.Integer(), nullable=True),
    )
    op.create_index('ix_income_bracket_configs_structure_id', 'income_bracket_configs', ['structure_id'])

    op.create_table(
        'income_brackets',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('config_id', sa.Integer(), nullable=False),
        sa.Column('label', sa.String(100), nullable=False),
        sa.Column('min_value', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_value', sa.Integer(), nullable=True),
        sa.Column('calc_kind', sa.String(20), nullable=False, server_default='fixed'),
        sa.Column('value', sa.Numeric(10, 2), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.ForeignKeyConstraint(['config_id'], ['income_bracket_configs.id'], ondelete='CASCADE'),
    )

    op.create_table(
        'income_bracket_age_values',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('bracket_id', sa.Integer(), nullable=False),
        sa.Column('age_bracket_id', sa.Integer(), nullable=False),
        sa.Column('calc_kind', sa.String(20), nullable=False, server_default='fixed'),
        sa.Column('value', sa.Numeric(10, 2), nullable=False),
        sa.ForeignKeyConstraint(['bracket_id'], ['income_brackets.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['age_bracket_id'], ['age_brackets.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('bracket_id', 'age_bracket_id', name='uq_income_bracket_age'),
    )

    # Reductions
    op.create_table(
        'accounting_operations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('label', sa.String(150), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('account_number', sa.String(20), nullable=True),
        sa.Column('journal_code', sa.String(10), nullable=False, server_default='VT'),
        sa.Column('analytic_section_id', sa.Integer(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('structure_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('code', 'structure_id', name='uq_accounting_operation_code_structure'),
    )
    op.create_index('ix_accounting_operations_structure_id', 'accounting_operations', ['structure_id'])

    op.create_table(
        'legacy_reduction_rules',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('label', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('source_kind', sa.String(30), nullable=False, server_default='manual'),
        sa.Column('condition_kind', sa.String(30), nullable=True),
        sa.Column('condition_json', sa.JSON(), nullable=True),
        sa.Column('calc_kind', sa.String(20), nullable=False, server_default='fixed'),
        sa.Column('value', sa.Numeric(10, 2), nullable=False),
        sa.Column('application_order', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('structure_id', sa.Integer(), nullable=True),
        sa.Column('operation_id', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['operation_id'], ['accounting_operations.id'], ),
    )
    op.create_index('ix_legacy_reduction_rules_structure_id', 'legacy_reduction_rules', ['structure_id'])

    op.create_table(
        'decision_trees',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('schedule_id', sa.Integer(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('nodes', sa.JSON(), nullable=False),
        sa.Column('display_mode', sa.String(20), nullable=False, server_default='minimum'),
        sa.Column('locked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('locked_at', sa.DateTime(), nullable=True),
        sa.Column('is_current', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('superseded_at', sa.DateTime(), nullable=True),
        sa.Column('duplicated_from_id', sa.Integer(), nullable=True),
        sa.Column('structure_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['schedule_id'], ['fee_schedules.id'], ),
        sa.ForeignKeyConstraint(['duplicated_from_id'], ['decision_trees.id'], ),
    )
    op.create_index('idx_decision_tree_schedule_version', 'decision_trees', ['schedule_id', 'version'], unique=True)
    op.create_index('idx_decision_tree_schedule_current', 'decision_trees', ['schedule_id', 'is_current'])

    # Payments
    op.create_table(
        'membership_payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('member_id', sa.Integer(), nullable=False),
        sa.Column('schedule_id', sa.Integer(), nullable=False),
        sa.Column('structure_id', sa.Integer(), nullable=True),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('period_end', sa.Date(), nullable=False),
        sa.Column('payment_date', sa.Date(), nullable=False),
        sa.Column('payment_method', sa.String(30), nullable=False, server_default='cash'),
        sa.Column('payment_reference', sa.String(100), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('catalog_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('base_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('intermediate_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('total_reductions', sa.Numeric(10, 2), nullable=False),
        sa.Column('final_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('schedule_label_snapshot', sa.String(150), nullable=True),
        sa.Column('age_snapshot', sa.Integer(), nullable=True),
        sa.Column('age_bracket_id_snapshot', sa.Integer(), nullable=True),
        sa.Column('age_bracket_code_snapshot', sa.String(50), nullable=True),
        sa.Column('income_quotient_snapshot', sa.Integer(), nullable=True),
        sa.Column('income_bracket_id_snapshot', sa.Integer(), nullable=True),
        sa.Column('income_bracket_label_snapshot', sa.String(100), nullable=True),
        sa.Column('commune_id_snapshot', sa.Integer(), nullable=True),
        sa.Column('decision_tree_id', sa.Integer(), nullable=True),
        sa.Column('decision_tree_version', sa.Integer(), nullable=True),
        sa.Column('tree_path_json', sa.JSON(), nullable=True),
        sa.Column('tree_trace_json', sa.JSON(), nullable=True),
        sa.Column('calculation_detail_json', sa.JSON(), nullable=True),
        sa.Column('created_by', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['member_id'], ['members.id'], ),
        sa.ForeignKeyConstraint(['schedule_id'], ['fee_schedules.id'], ),
        sa.ForeignKeyConstraint(['decision_tree_id'], ['decision_trees.id'], ),
        sa.UniqueConstraint('member_id', 'schedule_id', 'period_start', name='uq_payment_member_schedule_period'),
    )
    op.create_index('ix_membership_payments_member_id', 'membership_payments', ['member_id'])
    op.create_index('idx_payment_tree', 'membership_payments', ['decision_tree_id'])

    op.create_table(
        'reduction_line_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('payment_id', sa.Integer(), nullable=False),
        sa.Column('source_kind', sa.String(50), nullable=False),
        sa.Column('rule_id', sa.Integer(), nullable=True),
        sa.Column('decision_tree_id', sa.Integer(), nullable=True),
        sa.Column('branch_code', sa.String(50), nullable=True),
        sa.Column('label', sa.String(150), nullable=True),
        sa.Column('calc_kind', sa.String(20), nullable=False),
        sa.Column('value', sa.Numeric(10, 2), nullable=False),
        sa.Column('computed_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('calculation_base', sa.Numeric(10, 2), nullable=True),
        sa.Column('application_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('operation_id', sa.Integer(), nullable=True),
        sa.Column('context_json', sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(['operation_id'], ['accounting_operations.id'], ),
        sa.ForeignKeyConstraint(['payment_id'], ['membership_payments.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_reduction_line_items_payment_id', 'reduction_line_items', ['payment_id'])
    op.create_index('ix_reduction_line_items_operation_id', 'reduction_line_items', ['operation_id'])


def downgrade() -> None:
    op.drop_table('reduction_line_items')
    op.drop_table('membership_payments')
    op.drop_table('decision_trees')
    op.drop_table('legacy_reduction_rules')
    op.drop_table('accounting_operations')
    op.drop_table('income_bracket_age_values')
    op.drop_table('income_brackets')
    op.drop_table('income_bracket_configs')
    op.drop_table('fee_schedule_bracket_amounts')
    op.drop_table('fee_schedules')
    op.drop_table('age_brackets')
    op.drop_table('income_quotient_history')
    op.drop_table('members')
    op.drop_table('commune_group_members')
    op.drop_table('commune_groups')
    op.drop_table('communes')
