from alembic import op

revision = "0001_documents"
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.execute("CREATE TABLE IF NOT EXISTS documents (id VARCHAR(64) PRIMARY KEY, collection TEXT NOT NULL, data TEXT NOT NULL, created_at BIGINT NOT NULL)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents (collection)")

def downgrade():
    op.execute("DROP INDEX IF EXISTS idx_documents_collection")
    op.execute("DROP TABLE IF EXISTS documents")
