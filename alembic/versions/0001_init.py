"""Migração inicial: integrações, fila de sincronização, mapeamentos e espelho da Olé."""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

def upgrade() -> None:
    op.create_table(
        "integrations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(120), nullable=False, server_default=""),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("ole_keyapi", sa.String(255), nullable=False),
        sa.Column("ole_login", sa.String(255), nullable=False),
        sa.Column("ole_password", sa.Text, nullable=False),
        sa.Column("webhook_token", sa.String(128), nullable=False),
        sa.Column("last_sync", sa.TIMESTAMP(timezone=False), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=False)),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=False)),
        sa.UniqueConstraint("webhook_token", name="uq_integrations_webhook_token"),
    )
    op.create_table(
        "sync_queue",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("integration_id", sa.String(36), sa.ForeignKey("integrations.id"), nullable=False),
        sa.Column("action", sa.String(32), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="5"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("error_log", sa.Text, nullable=True),
        sa.Column("subject_key", sa.String(32), nullable=True),
        sa.Column("scheduled_for", sa.TIMESTAMP(timezone=False), nullable=False),
        sa.Column("processed_at", sa.TIMESTAMP(timezone=False), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=False), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=False), nullable=False),
    )
    op.create_index("ix_sync_queue_claim", "sync_queue", ["integration_id", "status", "scheduled_for", "created_at"])
    op.create_index("ix_sync_queue_subject", "sync_queue", ["integration_id", "subject_key"])
    op.create_table(
        "product_plan_mappings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("integration_id", sa.String(36), sa.ForeignKey("integrations.id"), nullable=False),
        sa.Column("integration_code", sa.String(64), nullable=False),
        sa.Column("ole_plan_id", sa.String(32), nullable=False),
        sa.Column("ole_plan_name", sa.String(120), nullable=True),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_main_plan", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("description", sa.String(255), nullable=True),
        sa.UniqueConstraint("integration_id", "integration_code", name="uq_mapping_code"),
    )
    op.create_table(
        "ole_clientes",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("integration_id", sa.String(36), sa.ForeignKey("integrations.id"), nullable=False),
        sa.Column("ole_cliente_id", sa.String(32), nullable=False),
        sa.Column("documento", sa.String(14), nullable=False),
        sa.Column("nome", sa.String(255), nullable=False, server_default=""),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("telefone", sa.String(32), nullable=True),
        sa.Column("cidade", sa.String(120), nullable=True),
        sa.Column("estado", sa.String(2), nullable=True),
        sa.Column("cep", sa.String(9), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="ativo"),
        sa.Column("raw_data", sa.JSON(), nullable=False),
        sa.Column("last_sync_at", sa.TIMESTAMP(timezone=False), nullable=False),
        sa.UniqueConstraint("integration_id", "ole_cliente_id", name="uq_ole_cliente"),
    )
    op.create_index("ix_ole_clientes_documento", "ole_clientes", ["integration_id", "documento"])
    op.create_table(
        "ole_contratos",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("integration_id", sa.String(36), sa.ForeignKey("integrations.id"), nullable=False),
        sa.Column("ole_contrato_id", sa.String(32), nullable=False),
        sa.Column("ole_cliente_id", sa.String(32), nullable=False),
        sa.Column("plano_id", sa.String(32), nullable=True),
        sa.Column("plano", sa.String(120), nullable=True),
        sa.Column("valor", sa.Numeric(12, 2), nullable=True),
        sa.Column("dia_vencimento", sa.Integer, nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="ativo"),
        sa.Column("raw_data", sa.JSON(), nullable=False),
        sa.Column("last_sync_at", sa.TIMESTAMP(timezone=False), nullable=False),
        sa.UniqueConstraint("integration_id", "ole_contrato_id", name="uq_ole_contrato"),
    )
    op.create_index("ix_ole_contratos_cliente", "ole_contratos", ["integration_id", "ole_cliente_id"])
    op.create_table(
        "ole_boletos",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("integration_id", sa.String(36), sa.ForeignKey("integrations.id"), nullable=False),
        sa.Column("ole_boleto_id", sa.String(32), nullable=False),
        sa.Column("ole_cliente_id", sa.String(32), nullable=False),
        sa.Column("ole_contrato_id", sa.String(32), nullable=True),
        sa.Column("valor", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("data_vencimento", sa.String(10), nullable=True),
        sa.Column("data_pagamento", sa.String(10), nullable=True),
        sa.Column("situacao", sa.String(32), nullable=False, server_default="Aberto"),
        sa.Column("linha_digitavel", sa.String(64), nullable=True),
        sa.Column("raw_data", sa.JSON(), nullable=False),
        sa.Column("last_sync_at", sa.TIMESTAMP(timezone=False), nullable=False),
        sa.UniqueConstraint("integration_id", "ole_boleto_id", name="uq_ole_boleto"),
    )

def downgrade() -> None:
    op.drop_table("ole_boletos")
    op.drop_index("ix_ole_contratos_cliente", table_name="ole_contratos")
    op.drop_table("ole_contratos")
    op.drop_index("ix_ole_clientes_documento", table_name="ole_clientes")
    op.drop_table("ole_clientes")
    op.drop_table("product_plan_mappings")
    op.drop_index("ix_sync_queue_subject", table_name="sync_queue")
    op.drop_index("ix_sync_queue_claim", table_name="sync_queue")
    op.drop_table("sync_queue")
    op.drop_table("integrations")
