"""
ETL : Lecture de la zone de staging (stg_sales).

Extraction pure : aucune transformation ici. La lecture ne vide pas le
staging, un nouveau run relit le meme contenu.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Iterator, Optional

import pandas as pd
from sqlalchemy import select, func, insert

from .schema import stg_sales

logger = logging.getLogger('etl_staging')

SAMPLE_CSV = Path(__file__).parent / 'data' / 'sample_staging.csv'

# Colonnes de l'export source -> colonnes stg_sales
STAGING_COLUMNS = {
    'CUSTOMERCODE':    'customer_code',
    'CUSTOMERNAME':    'customer_name',
    'PRODUCTCATEGORY': 'product_category',
    'PRODUCTNAME':     'product_name',
    'SALEDATE':        'sale_date',
    'QUANTITY':        'quantity',
    'UNITPRICE':       'unit_price',
    'TOTALAMOUNT':     'total_amount',
    'REGION':          'region',
    'SALESREP':        'sales_rep',
}


@dataclass(frozen=True)
class StagingRecord:
    """Ligne brute de vente, immuable une fois lue."""
    customer_code: Optional[str]
    customer_name: Optional[str]
    product_category: Optional[str]
    product_name: Optional[str]
    sale_date: Optional[date]
    quantity: Optional[int]
    unit_price: Optional[Decimal]
    total_amount: Optional[Decimal]
    region: Optional[str]
    sales_rep: Optional[str]
    staging_id: Optional[int] = None


def _clean(value):
    if value is None:
        return None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    return value


def _to_decimal(value) -> Optional[Decimal]:
    value = _clean(value)
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _to_date(value) -> Optional[date]:
    value = _clean(value)
    if value is None:
        return None
    if isinstance(value, pd.Timestamp):
        return value.date()
    if isinstance(value, date):
        return value
    return pd.to_datetime(value).date()


def _to_text(value) -> Optional[str]:
    value = _clean(value)
    return None if value is None else str(value)


def _to_int(value) -> Optional[int]:
    value = _clean(value)
    return None if value is None else int(value)


def record_from_row(row: dict) -> StagingRecord:
    """Convertit une ligne (dict) de stg_sales en StagingRecord."""
    return StagingRecord(
        customer_code=_to_text(row.get('customer_code')),
        customer_name=_to_text(row.get('customer_name')),
        product_category=_to_text(row.get('product_category')),
        product_name=_to_text(row.get('product_name')),
        sale_date=_to_date(row.get('sale_date')),
        quantity=_to_int(row.get('quantity')),
        unit_price=_to_decimal(row.get('unit_price')),
        total_amount=_to_decimal(row.get('total_amount')),
        region=_to_text(row.get('region')),
        sales_rep=_to_text(row.get('sales_rep')),
        staging_id=_to_int(row.get('staging_id')),
    )


class StagingReader:
    """Lecture paresseuse et rejouable de stg_sales, par blocs."""

    def __init__(self, engine, chunk_size: int = 500):
        self.engine = engine
        self.chunk_size = chunk_size

    def read_all(self) -> Iterator[StagingRecord]:
        query = select(stg_sales).order_by(stg_sales.c.staging_id)
        with self.engine.connect() as conn:
            for chunk in pd.read_sql(query, conn, chunksize=self.chunk_size):
                for row in chunk.to_dict('records'):
                    yield record_from_row(row)


def count_staging(engine) -> int:
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(stg_sales)).scalar()


def load_staging_csv(engine, csv_path: str) -> int:
    """
    Charge un export CSV dans stg_sales (ajout, pas de purge).

    Les en-tetes sont reconnus sans tenir compte de la casse
    (CustomerCode, CUSTOMERCODE, customer_code...).
    """
    df = pd.read_csv(csv_path, dtype=str)

    # Detection des colonnes (insensible a la casse et aux '_')
    col_map = {}
    for col in df.columns:
        target = STAGING_COLUMNS.get(col.upper().replace('_', '').strip())
        if target:
            col_map[col] = target

    missing = set(STAGING_COLUMNS.values()) - set(col_map.values())
    if missing:
        raise ValueError(f"Colonnes manquantes dans {csv_path}: {sorted(missing)}")

    df = df.rename(columns=col_map)[list(STAGING_COLUMNS.values())]

    rows = []
    for row in df.to_dict('records'):
        rows.append({
            'customer_code': _to_text(row['customer_code']),
            'customer_name': _to_text(row['customer_name']),
            'product_category': _to_text(row['product_category']),
            'product_name': _to_text(row['product_name']),
            'sale_date': _to_date(row['sale_date']),
            'quantity': _to_int(row['quantity']),
            'unit_price': _to_decimal(row['unit_price']),
            'total_amount': _to_decimal(row['total_amount']),
            'region': _to_text(row['region']),
            'sales_rep': _to_text(row['sales_rep']),
        })

    if not rows:
        logger.warning(f"Aucune ligne dans {csv_path}")
        return 0

    with engine.begin() as conn:
        conn.execute(insert(stg_sales), rows)

    logger.info(f"stg_sales: {len(rows)} lignes chargees depuis {csv_path}")
    return len(rows)
