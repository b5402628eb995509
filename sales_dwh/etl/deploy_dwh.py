#!/usr/bin/env python3
"""
Deploiement du schema en etoile des ventes

Cree les tables (staging, dimensions, faits, journalisation) puis la vue
de reporting v_sales_summary.

Usage:
    python -m sales_dwh.etl.deploy_dwh [--preview] [--config sales_dwh.conf]
    python -m sales_dwh.etl.deploy_dwh --database-url sqlite:///sales_dwh.db
"""

import sys
import logging
import argparse

from sqlalchemy import create_engine
from sqlalchemy.dialects import mssql, sqlite, postgresql
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.schema import CreateTable, CreateIndex

from .config import load_config, get_connection_string, setup_logging
from .schema import metadata, deploy_schema, SUMMARY_VIEW, SUMMARY_VIEW_SELECT

logger = logging.getLogger('etl_deploy')

DIALECTS = {
    'mssql': mssql.dialect,
    'sqlite': sqlite.dialect,
    'postgresql': postgresql.dialect,
}


def render_ddl(dialect_name: str = 'mssql') -> str:
    """DDL complet du schema pour un dialecte, sans connexion."""
    dialect = DIALECTS[dialect_name]()
    blocks = []
    for table in metadata.sorted_tables:
        blocks.append(str(CreateTable(table).compile(dialect=dialect)).strip())
        blocks.extend(str(CreateIndex(index).compile(dialect=dialect)).strip()
                      for index in sorted(table.indexes, key=lambda i: i.name))
    blocks.append(f"CREATE VIEW {SUMMARY_VIEW} AS {SUMMARY_VIEW_SELECT.strip()}")
    return ';\n\n'.join(blocks) + ';\n'


def main(argv=None):
    parser = argparse.ArgumentParser(description='Deploiement du schema en etoile des ventes')
    parser.add_argument('--preview', action='store_true', help='Affiche le DDL sans l\'executer')
    parser.add_argument('--dialect', default='mssql', choices=sorted(DIALECTS), help='Dialecte du DDL en mode apercu')
    parser.add_argument('--config', help='Fichier de configuration')
    parser.add_argument('--database-url', help='URL SQLAlchemy de l\'entrepot')
    args = parser.parse_args(argv)

    setup_logging()

    print("=" * 60)
    print("DEPLOIEMENT SCHEMA EN ETOILE - VENTES")
    print("=" * 60)

    if args.preview:
        print("[PREVIEW] Mode apercu - pas de connexion SQL\n")
        print(render_ddl(args.dialect))
        return 0

    try:
        config = load_config(args.config, overrides={'database_url': args.database_url})
        engine = create_engine(get_connection_string(config))
        deploy_schema(engine)
    except (ValueError, SQLAlchemyError) as e:
        logger.error(f"Deploiement impossible : {e}")
        print(f"[ERROR] {e}")
        return 1

    print(f"[SUCCESS] {len(metadata.tables)} tables et la vue {SUMMARY_VIEW} deployees")
    return 0


if __name__ == '__main__':
    sys.exit(main())
