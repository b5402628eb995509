"""
Schema en etoile des ventes (SQLAlchemy Core).

  stg_sales                      : zone de staging (donnees brutes)
  dim_customer / dim_product /
  dim_sales_rep                  : dimensions, cle de substitution generee
  fact_sales                     : table de faits
  log_etl                        : journal d'execution (une entree par etape)
  log_erreurs                    : lignes rejetees
  v_sales_summary                : vue de reporting (faits + dimensions)
"""

import datetime

from sqlalchemy import (
    MetaData,
    Table,
    Column,
    Integer,
    String,
    Date,
    DateTime,
    Numeric,
    Float,
    ForeignKey,
    CheckConstraint,
    UniqueConstraint,
    Index,
    text
)

metadata = MetaData()


def _now():
    return datetime.datetime.now()


# ───────────── Staging ──────────────────────────────────────────────────────
stg_sales = Table(
    "stg_sales", metadata,
    Column("staging_id",       Integer, primary_key=True, autoincrement=True),
    Column("customer_code",    String(50)),
    Column("customer_name",    String(200)),
    Column("product_category", String(100)),
    Column("product_name",     String(200)),
    Column("sale_date",        Date),
    Column("quantity",         Integer),
    Column("unit_price",       Numeric(10, 2)),
    Column("total_amount",     Numeric(12, 2)),
    Column("region",           String(100)),
    Column("sales_rep",        String(200)),
)

# ───────────── Dimensions ───────────────────────────────────────────────────
dim_customer = Table(
    "dim_customer", metadata,
    Column("customer_key",  Integer, primary_key=True, autoincrement=True),
    Column("customer_code", String(50),  nullable=False),
    Column("customer_name", String(200)),
    Column("created_at",    DateTime, nullable=False, default=_now),
    UniqueConstraint("customer_code", name="uq_dim_customer_code"),
)

dim_product = Table(
    "dim_product", metadata,
    Column("product_key",      Integer, primary_key=True, autoincrement=True),
    Column("product_name",     String(200), nullable=False),
    Column("product_category", String(100)),
    Column("created_at",       DateTime, nullable=False, default=_now),
    UniqueConstraint("product_name", name="uq_dim_product_name"),
)

dim_sales_rep = Table(
    "dim_sales_rep", metadata,
    Column("sales_rep_key",  Integer, primary_key=True, autoincrement=True),
    Column("sales_rep_name", String(200), nullable=False),
    Column("region",         String(100)),
    Column("created_at",     DateTime, nullable=False, default=_now),
    UniqueConstraint("sales_rep_name", name="uq_dim_sales_rep_name"),
)

# ───────────── Faits ────────────────────────────────────────────────────────
fact_sales = Table(
    "fact_sales", metadata,
    Column("sale_key",      Integer, primary_key=True, autoincrement=True),
    Column("run_id",        String(32), nullable=False),
    Column("staging_id",    Integer),
    Column("source_hash",   String(64)),
    Column("customer_key",  Integer, ForeignKey("dim_customer.customer_key"),   nullable=False),
    Column("product_key",   Integer, ForeignKey("dim_product.product_key"),     nullable=False),
    Column("sales_rep_key", Integer, ForeignKey("dim_sales_rep.sales_rep_key"), nullable=False),
    Column("sale_date",     Date,    nullable=False),
    Column("quantity",      Integer, nullable=False),
    Column("unit_price",    Numeric(10, 2), nullable=False),
    Column("total_amount",  Numeric(12, 2), nullable=False),
    Column("region",        String(100)),
    Column("load_date",     DateTime, nullable=False, default=_now),
    CheckConstraint("quantity >= 0", name="ck_fact_sales_quantity"),
    Index("ix_fact_sales_source_hash", "source_hash"),
)

# ───────────── Journalisation ───────────────────────────────────────────────
log_etl = Table(
    "log_etl", metadata,
    Column("log_id",         Integer, primary_key=True, autoincrement=True),
    Column("run_id",         String(32),  nullable=False),
    Column("stage_name",     String(100), nullable=False),
    Column("start_time",     DateTime,    nullable=False),
    Column("end_time",       DateTime),
    Column("status",         String(20),  nullable=False),
    Column("rows_processed", Integer),
    Column("duration_sec",   Float),
    Column("error_message",  String(500)),
    CheckConstraint(
        "status IN ('Running','Success','Failed')",
        name="ck_log_etl_status"
    ),
)

log_erreurs = Table(
    "log_erreurs", metadata,
    Column("erreur_id",     Integer, primary_key=True, autoincrement=True),
    Column("run_id",        String(32),  nullable=False),
    Column("stage_name",    String(100), nullable=False),
    Column("staging_id",    Integer),
    Column("customer_code", String(50)),
    Column("product_name",  String(200)),
    Column("sales_rep",     String(200)),
    Column("error_type",    String(100), nullable=False),
    Column("reason",        String(500)),
    Column("created_at",    DateTime, nullable=False, default=_now),
)

# ───────────── Vue de reporting ─────────────────────────────────────────────
SUMMARY_VIEW = "v_sales_summary"

SUMMARY_VIEW_SELECT = """
SELECT
    f.sale_key,
    f.sale_date,
    c.customer_code,
    c.customer_name,
    p.product_category,
    p.product_name,
    r.sales_rep_name,
    f.region,
    f.quantity,
    f.unit_price,
    f.total_amount
FROM fact_sales f
JOIN dim_customer  c ON f.customer_key  = c.customer_key
JOIN dim_product   p ON f.product_key   = p.product_key
JOIN dim_sales_rep r ON f.sales_rep_key = r.sales_rep_key
"""


def create_summary_view(engine):
    """(Re)cree la vue de reporting selon le dialecte."""
    with engine.begin() as conn:
        if engine.dialect.name == 'mssql':
            conn.execute(text(f"CREATE OR ALTER VIEW {SUMMARY_VIEW} AS {SUMMARY_VIEW_SELECT}"))
        else:
            conn.execute(text(f"DROP VIEW IF EXISTS {SUMMARY_VIEW}"))
            conn.execute(text(f"CREATE VIEW {SUMMARY_VIEW} AS {SUMMARY_VIEW_SELECT}"))


def deploy_schema(engine):
    """Cree les tables manquantes puis la vue de reporting."""
    metadata.create_all(engine)
    create_summary_view(engine)
