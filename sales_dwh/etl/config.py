"""
Configuration du pipeline ETL.

Ordre de priorite : arguments CLI > variables d'environnement
> fichier de configuration (sales_dwh.conf) > valeurs par defaut.

Le fichier de configuration suit le format key = "value" :

    # Connexion SQL Server
    sql_server_name    = "sqlsales-prod"
    sql_database_name  = "sales_dwh"
    sql_admin_login    = "etl_user"
    sql_admin_password = "..."
    stage_timeout      = "600"
"""

import os
import re
import logging
from pathlib import Path

logger = logging.getLogger('etl_config')

DEFAULT_CONFIG_FILE = 'sales_dwh.conf'

# cle -> variable d'environnement
ENV_VARS = {
    'database_url':       'DWH_DATABASE_URL',
    'sql_server_name':    'DWH_SQL_SERVER',
    'sql_database_name':  'DWH_SQL_DATABASE',
    'sql_admin_login':    'DWH_SQL_USER',
    'sql_admin_password': 'DWH_SQL_PASSWORD',
    'stage_timeout':      'ETL_STAGE_TIMEOUT',
    'max_workers':        'ETL_MAX_WORKERS',
    'fact_rerun_policy':  'ETL_FACT_RERUN_POLICY',
    'chunk_size':         'ETL_CHUNK_SIZE',
    'etl_smtp_host':      'ETL_SMTP_HOST',
    'etl_smtp_port':      'ETL_SMTP_PORT',
    'etl_smtp_user':      'ETL_SMTP_USER',
    'etl_smtp_password':  'ETL_SMTP_PASSWORD',
    'etl_notify_email':   'ETL_NOTIFY_EMAIL',
}

DEFAULTS = {
    'database_url': '',
    'sql_server_name': '',
    'sql_database_name': '',
    'sql_admin_login': '',
    'sql_admin_password': '',
    'stage_timeout': None,
    'max_workers': 3,
    'fact_rerun_policy': 'skip',
    'chunk_size': 500,
    'etl_smtp_host': 'smtp.gmail.com',
    'etl_smtp_port': 587,
    'etl_smtp_user': '',
    'etl_smtp_password': '',
    'etl_notify_email': '',
}

RERUN_POLICIES = ('skip', 'append')

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s - %(message)s'


def setup_logging(log_file: str = 'etl_pipeline.log', level=logging.INFO):
    """Logging console + fichier, pour les points d'entree CLI."""
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )


def parse_config_file(config_path: str) -> dict:
    """Parse un fichier key = "value" (les lignes # sont ignorees)."""
    config = {}
    config_file = Path(config_path)

    if not config_file.exists():
        return config

    with open(config_file, 'r', encoding='utf-8-sig') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            match = re.match(r'^(\w+)\s*=\s*"?([^"]*)"?\s*$', line)
            if match:
                key, value = match.groups()
                config[key] = value.strip()

    return config


def _coerce(config: dict) -> dict:
    """Convertit les valeurs numeriques et valide la politique de rechargement."""
    timeout = config.get('stage_timeout')
    config['stage_timeout'] = float(timeout) if timeout not in (None, '') else None
    config['max_workers'] = max(1, int(config.get('max_workers') or 1))
    config['chunk_size'] = max(1, int(config.get('chunk_size') or DEFAULTS['chunk_size']))
    config['etl_smtp_port'] = int(config.get('etl_smtp_port') or DEFAULTS['etl_smtp_port'])

    policy = str(config.get('fact_rerun_policy') or 'skip').lower()
    if policy not in RERUN_POLICIES:
        raise ValueError(f"fact_rerun_policy invalide: {policy} (attendu: {', '.join(RERUN_POLICIES)})")
    config['fact_rerun_policy'] = policy
    return config


def load_config(config_path: str = None, overrides: dict = None) -> dict:
    """
    Construit la configuration effective.

    overrides : valeurs issues de la ligne de commande (les None sont ignores).
    """
    path = config_path or os.getenv('SALES_DWH_CONFIG', DEFAULT_CONFIG_FILE)
    file_values = parse_config_file(path)

    if file_values:
        logger.info(f"Configuration chargee depuis {path} ({len(file_values)} variables)")

    config = dict(DEFAULTS)
    for key in DEFAULTS:
        if key in file_values:
            config[key] = file_values[key]
        env_value = os.getenv(ENV_VARS[key])
        if env_value:
            config[key] = env_value

    for key, value in (overrides or {}).items():
        if value is not None:
            config[key] = value

    return _coerce(config)


def get_connection_string(config: dict) -> str:
    """URL SQLAlchemy : database_url explicite, sinon SQL Server via pyodbc."""
    if config.get('database_url'):
        return config['database_url']

    server = config.get('sql_server_name', '')
    database = config.get('sql_database_name', '')
    user = config.get('sql_admin_login', '')
    password = config.get('sql_admin_password', '')

    if not all([server, database, user, password]):
        raise ValueError("Configuration SQL incomplete. Verifiez les variables d'environnement ou le fichier de configuration.")

    if '.' not in server:
        server = f"{server}.database.windows.net"

    driver = 'ODBC+Driver+18+for+SQL+Server'
    return f"mssql+pyodbc://{user}:{password}@{server}:1433/{database}?driver={driver}&Encrypt=yes&TrustServerCertificate=yes"
