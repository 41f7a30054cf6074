"""Initial migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create submissions table
    op.create_table(
        'submissions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('source_message_id', sa.String(length=128), nullable=False),
        sa.Column('supplier_id', sa.String(length=64), nullable=False),
        sa.Column('supplier_name', sa.String(length=255), nullable=True),
        sa.Column('supplier_phone', sa.String(length=32), nullable=True),
        sa.Column('content_type', sa.String(length=10), nullable=False),
        sa.Column('original_content', sa.Text(), nullable=False),
        sa.Column('media_ref', sa.String(), nullable=True),
        sa.Column('media_mime_type', sa.String(length=100), nullable=True),
        sa.Column('media_filename', sa.String(length=255), nullable=True),
        sa.Column('processing_status', sa.String(length=20), nullable=False),
        sa.Column('validation_status', sa.String(length=20), nullable=False),
        sa.Column('attempt', sa.Integer(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('overall_confidence', sa.Float(), nullable=True),
        sa.Column('processing_time_ms', sa.Integer(), nullable=True),
        sa.Column('processing_started_at', sa.DateTime(), nullable=True),
        sa.Column('auto_approved', sa.Boolean(), nullable=False),
        sa.Column('validated_by', sa.String(length=100), nullable=True),
        sa.Column('validation_notes', sa.Text(), nullable=True),
        sa.Column('validated_at', sa.DateTime(), nullable=True),
        sa.Column('received_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_submissions_id'), 'submissions', ['id'], unique=False)
    op.create_index(op.f('ix_submissions_source_message_id'), 'submissions', ['source_message_id'], unique=True)
    op.create_index(op.f('ix_submissions_supplier_id'), 'submissions', ['supplier_id'], unique=False)
    op.create_index(op.f('ix_submissions_content_type'), 'submissions', ['content_type'], unique=False)
    op.create_index(op.f('ix_submissions_processing_status'), 'submissions', ['processing_status'], unique=False)
    op.create_index(op.f('ix_submissions_validation_status'), 'submissions', ['validation_status'], unique=False)
    op.create_index(op.f('ix_submissions_created_at'), 'submissions', ['created_at'], unique=False)

    # Create extracted_products table
    op.create_table(
        'extracted_products',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('submission_id', sa.Uuid(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('attempt', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('brand', sa.String(length=100), nullable=True),
        sa.Column('category', sa.String(length=100), nullable=True),
        sa.Column('condition', sa.String(length=50), nullable=True),
        sa.Column('grade', sa.String(length=5), nullable=True),
        sa.Column('price', sa.Numeric(14, 2), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=True),
        sa.Column('specifications', sa.JSON(), nullable=True),
        sa.Column('confidence_score', sa.Float(), nullable=False),
        sa.Column('field_confidences', sa.JSON(), nullable=True),
        sa.Column('extraction_metadata', sa.JSON(), nullable=True),
        sa.Column('auto_approved', sa.Boolean(), nullable=False),
        sa.Column('catalog_product_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['submission_id'], ['submissions.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_extracted_products_id'), 'extracted_products', ['id'], unique=False)
    op.create_index(op.f('ix_extracted_products_submission_id'), 'extracted_products', ['submission_id'], unique=False)

    # Create validation_items table
    op.create_table(
        'validation_items',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('submission_id', sa.Uuid(), nullable=False),
        sa.Column('extracted_product_id', sa.Uuid(), nullable=False),
        sa.Column('supplier_id', sa.String(length=64), nullable=False),
        sa.Column('supplier_name', sa.String(length=255), nullable=True),
        sa.Column('content_type', sa.String(length=10), nullable=False),
        sa.Column('confidence_score', sa.Float(), nullable=False),
        sa.Column('auto_approve_threshold', sa.Float(), nullable=False),
        sa.Column('priority', sa.String(length=10), nullable=False),
        sa.Column('priority_rank', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('submitted_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_by', sa.String(length=100), nullable=True),
        sa.Column('resolution_notes', sa.Text(), nullable=True),
        sa.Column('feedback', sa.JSON(), nullable=True),
        sa.Column('edits', sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(['submission_id'], ['submissions.id'], ),
        sa.ForeignKeyConstraint(['extracted_product_id'], ['extracted_products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('extracted_product_id')
    )
    op.create_index(op.f('ix_validation_items_id'), 'validation_items', ['id'], unique=False)
    op.create_index(op.f('ix_validation_items_submission_id'), 'validation_items', ['submission_id'], unique=False)
    op.create_index(op.f('ix_validation_items_supplier_id'), 'validation_items', ['supplier_id'], unique=False)
    op.create_index(op.f('ix_validation_items_priority'), 'validation_items', ['priority'], unique=False)
    op.create_index(op.f('ix_validation_items_status'), 'validation_items', ['status'], unique=False)
    op.create_index(op.f('ix_validation_items_resolved_at'), 'validation_items', ['resolved_at'], unique=False)

    # Create failed_operations table
    op.create_table(
        'failed_operations',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('operation_type', sa.String(length=30), nullable=False),
        sa.Column('submission_id', sa.Uuid(), nullable=True),
        sa.Column('extracted_product_id', sa.Uuid(), nullable=True),
        sa.Column('status', sa.String(length=30), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('max_retries', sa.Integer(), nullable=False),
        sa.Column('next_retry_at', sa.DateTime(), nullable=True),
        sa.Column('last_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['submission_id'], ['submissions.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_failed_operations_id'), 'failed_operations', ['id'], unique=False)
    op.create_index(op.f('ix_failed_operations_operation_type'), 'failed_operations', ['operation_type'], unique=False)
    op.create_index(op.f('ix_failed_operations_submission_id'), 'failed_operations', ['submission_id'], unique=False)
    op.create_index(op.f('ix_failed_operations_status'), 'failed_operations', ['status'], unique=False)
    op.create_index(op.f('ix_failed_operations_next_retry_at'), 'failed_operations', ['next_retry_at'], unique=False)


def downgrade() -> None:
    op.drop_table('failed_operations')
    op.drop_table('validation_items')
    op.drop_table('extracted_products')
    op.drop_table('submissions')
