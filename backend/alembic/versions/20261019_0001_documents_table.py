"""Create the documents table and its typed field index table."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None

_FIELD_INDEXES = {
    "ix_document_fields_bool": "bool_value",
    "ix_document_fields_num": "num_value",
    "ix_document_fields_text": "text_value",
    "ix_document_fields_ts": "ts_value",
}


def upgrade() -> None:
    op.create_table(
        "documents",
        sa.Column("collection", sa.String(length=128), nullable=False),
        sa.Column("doc_id", sa.String(length=256), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("collection", "doc_id"),
    )
    op.create_index("ix_documents_collection_created_at", "documents", ["collection", "created_at"], unique=False)

    op.create_table(
        "document_fields",
        sa.Column("collection", sa.String(length=128), nullable=False),
        sa.Column("doc_id", sa.String(length=256), nullable=False),
        sa.Column("field_name", sa.String(length=128), nullable=False),
        sa.Column("bool_value", sa.Boolean(), nullable=True),
        sa.Column("num_value", sa.Float(), nullable=True),
        sa.Column("text_value", sa.String(length=256), nullable=True),
        sa.Column("ts_value", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("collection", "doc_id", "field_name"),
    )
    for index_name, column in _FIELD_INDEXES.items():
        op.create_index(index_name, "document_fields", ["collection", "field_name", column], unique=False)


def downgrade() -> None:
    for index_name in _FIELD_INDEXES:
        op.drop_index(index_name, table_name="document_fields")
    op.drop_table("document_fields")
    op.drop_index("ix_documents_collection_created_at", table_name="documents")
    op.drop_table("documents")
