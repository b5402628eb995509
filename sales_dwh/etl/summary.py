"""
Lecture de la vue de reporting v_sales_summary.

Vue en lecture seule (jointure vivante faits + dimensions), le pipeline ne
la modifie jamais. Tri par convention : date de vente decroissante.
"""

import pandas as pd
from sqlalchemy import text

from .schema import SUMMARY_VIEW


def read_summary(engine, limit: int = None) -> pd.DataFrame:
    query = text(f"SELECT * FROM {SUMMARY_VIEW} ORDER BY sale_date DESC, sale_key DESC")
    with engine.connect() as conn:
        df = pd.read_sql(query, conn)
    return df.head(limit) if limit else df


def _aggregate(engine, group_col: str) -> pd.DataFrame:
    df = read_summary(engine)
    if df.empty:
        return pd.DataFrame(columns=[group_col, 'nb_ventes', 'quantite', 'chiffre_affaires'])

    df['total_amount'] = df['total_amount'].astype(float)
    agg = df.groupby(group_col).agg(
        nb_ventes=('sale_key', 'count'),
        quantite=('quantity', 'sum'),
        chiffre_affaires=('total_amount', 'sum'),
    ).reset_index()
    agg['chiffre_affaires'] = agg['chiffre_affaires'].round(2)
    return agg.sort_values('chiffre_affaires', ascending=False).reset_index(drop=True)


def sales_by_region(engine) -> pd.DataFrame:
    """Chiffre d'affaires par region."""
    return _aggregate(engine, 'region')


def sales_by_rep(engine) -> pd.DataFrame:
    """Chiffre d'affaires par commercial."""
    return _aggregate(engine, 'sales_rep_name')
