"""
Outils communs aux tests : entrepot SQLite temporaire et jeux de donnees.
"""

import shutil
import tempfile
import unittest
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path

from sqlalchemy import create_engine, insert, select, func

from sales_dwh.etl.schema import deploy_schema, metadata, stg_sales
from sales_dwh.etl.staging import StagingRecord


class TestConfiguration:
    """Configuration des tests : base SQLite jetable, schema deploye."""

    @classmethod
    def get_engine(cls, directory: str):
        return create_engine(f"sqlite:///{Path(directory) / 'dwh_test.db'}")


def sample_rows(n: int = 10, start: date = date(2024, 1, 1)) -> list:
    """n ventes reparties sur 5 clients, 5 produits, 5 commerciaux."""
    rows = []
    for i in range(n):
        k = i % 5 + 1
        rows.append({
            'customer_code': f'CUST{k:03d}',
            'customer_name': f'Client {k}',
            'product_category': 'Electronics' if k % 2 else 'Furniture',
            'product_name': f'Produit {k}',
            'sale_date': start + timedelta(days=i),
            'quantity': i + 1,
            'unit_price': Decimal('10.50'),
            'total_amount': None,
            'region': ['North', 'South', 'East', 'West', 'Center'][k - 1],
            'sales_rep': f'Commercial {k}',
        })
    return rows


def make_record(**overrides) -> StagingRecord:
    values = {
        'customer_code': 'CUST001',
        'customer_name': 'Contoso Ltd',
        'product_category': 'Electronics',
        'product_name': 'Wireless Mouse',
        'sale_date': date(2024, 1, 5),
        'quantity': 25,
        'unit_price': Decimal('29.99'),
        'total_amount': None,
        'region': 'North',
        'sales_rep': 'Alice Martin',
        'staging_id': None,
    }
    values.update(overrides)
    return StagingRecord(**values)


class WarehouseTestCase(unittest.TestCase):
    """Chaque test dispose de son propre entrepot vide."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix='sales_dwh_')
        self.engine = TestConfiguration.get_engine(self.tmpdir)
        deploy_schema(self.engine)

    def tearDown(self):
        self.engine.dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def insert_staging(self, rows: list):
        with self.engine.begin() as conn:
            conn.execute(insert(stg_sales), rows)

    def count(self, table_name: str) -> int:
        table = metadata.tables[table_name]
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(table)).scalar()

    def fetch(self, table_name: str, *where) -> list:
        table = metadata.tables[table_name]
        query = select(table)
        for clause in where:
            query = query.where(clause)
        with self.engine.connect() as conn:
            return [dict(r) for r in conn.execute(query).mappings().all()]
