#!/usr/bin/env python3
"""
ETL Ventes : Pipeline Principal

Ce script orchestre le chargement du schema en etoile :
1. Staging       : lecture de stg_sales (chargement CSV optionnel)
2. Dimensions    : dim_customer, dim_product, dim_sales_rep (independantes, en parallele)
3. Faits         : fact_sales, apres la fin des trois dimensions
4. Reporting     : v_sales_summary (lecture seule)

Chaque etape est tracee dans log_etl (Running -> Success / Failed).
Une etape en echec n'annule pas les etapes independantes.

Usage:
    python -m sales_dwh.etl.run_etl                          # Pipeline complet
    python -m sales_dwh.etl.run_etl --staging-csv ventes.csv # Charger un CSV avant
    python -m sales_dwh.etl.run_etl --deploy                 # Creer le schema avant
    python -m sales_dwh.etl.run_etl --summary                # Afficher la vue de reporting
"""

import sys
import json
import time
import logging
import argparse
from pathlib import Path
from datetime import datetime
from concurrent.futures import ThreadPoolExecutor, wait, FIRST_COMPLETED

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError

from .audit import RunContext, StageControl, STATUS_SUCCESS, STATUS_FAILED
from .config import load_config, get_connection_string, setup_logging, DEFAULTS
from .errors import EtlError
from .load_dimensions import DIMENSIONS, build_resolvers, load_dimension
from .load_facts import FactLoader, LoadResult, load_fact_sales
from .schema import deploy_schema
from .staging import StagingReader, load_staging_csv, SAMPLE_CSV
from .summary import read_summary
from .etl_notifier import get_smtp_config, send_success_email, send_error_email

logger = logging.getLogger('etl_pipeline')

POLL_INTERVAL = 0.05  # secondes, surveillance des timeouts


def _nb_lignes(value) -> int:
    if isinstance(value, LoadResult):
        return value.inserted
    if isinstance(value, list):
        return len(value)
    return int(value or 0)


def _finish(ctx, control, future):
    """(statut, valeur, erreur) d'une etape terminee, entree log_etl finalisee."""
    try:
        value = future.result()
    except Exception as e:
        if control.handle is not None:
            ctx.audit.fail(control.handle, f"{type(e).__name__}: {e}")
        return STATUS_FAILED, None, str(e)
    ctx.audit.complete(control.handle, _nb_lignes(value))
    return STATUS_SUCCESS, value, None


def _run_stages(ctx, stages: list, workers: int, timeout: float = None) -> dict:
    """
    Execute des etapes independantes dans un pool de threads.

    stages : liste de (nom_etape, fonction(control))
    Le timeout s'applique a chaque etape depuis son demarrage effectif : une
    etape en file d'attente ne consomme pas le temps des autres.
    Retourne {nom_etape: (statut, valeur, erreur, heure, duree_sec)}.
    """
    controls = {name: StageControl(name, ctx) for name, _ in stages}
    executor = ThreadPoolExecutor(max_workers=max(1, min(workers, len(stages))))
    futures = {name: executor.submit(controls[name].run, fn) for name, fn in stages}

    results = {}
    pending = [name for name, _ in stages]
    timed_out = False
    while pending:
        for name in list(pending):
            control, future = controls[name], futures[name]
            if future.done():
                results[name] = _finish(ctx, control, future) + (control.elapsed(),)
                pending.remove(name)
                continue

            if not timeout or control.started is None:
                continue
            now = time.monotonic()
            if now - control.started <= timeout:
                continue

            with control.lock:
                # Commit deja fait : l'etape se termine normalement
                if control.committed or future.done():
                    continue
                control.cancel()
                erreur = f"Timeout apres {timeout}s"
                ctx.audit.fail(control.handle, erreur)
            timed_out = True
            results[name] = (STATUS_FAILED, None, erreur, control.elapsed(now))
            pending.remove(name)

        if pending:
            wait([futures[n] for n in pending], timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)

    # Une etape annulee s'arrete a son prochain point de controle, on ne l'attend pas
    executor.shutdown(wait=not timed_out, cancel_futures=timed_out)

    return {
        name: (statut, value, erreur,
               controls[name].started_at.strftime('%H:%M:%S') if controls[name].started_at else '-',
               duree)
        for name, (statut, value, erreur, duree) in results.items()
    }


def run_pipeline(engine, config: dict, staging_csv: str = None,
                 notify: bool = False, run_id: str = None) -> dict:
    """
    Execute un run complet et retourne le rapport :
    {'run_id', 'success', 'etapes': {etape: {...}}, 'load_result': {...}}
    """
    settings = dict(DEFAULTS)
    settings.update({k: v for k, v in config.items() if v is not None})
    workers = int(settings['max_workers'])
    timeout = settings['stage_timeout']

    ctx = RunContext.create(engine, run_id)
    logger.info(f"Demarrage du run {ctx.run_id}")

    rapport = {'run_id': ctx.run_id, 'success': True, 'etapes': {}, 'load_result': None}

    def _record(results: dict):
        for name, (statut, value, erreur, heure, duree) in results.items():
            rapport['etapes'][name] = {
                'statut': statut,
                'nb_lignes': _nb_lignes(value) if statut == STATUS_SUCCESS else 0,
                'heure': heure,
                'duree_sec': duree,
                'erreur': erreur,
            }
            if statut != STATUS_SUCCESS:
                rapport['success'] = False

    # Politique de rechargement validee avant toute etape
    resolvers = build_resolvers(engine)
    loader = FactLoader(ctx, resolvers, max_workers=workers,
                        rerun_policy=settings['fact_rerun_policy'],
                        chunk_size=int(settings['chunk_size']))

    # ----------------------------------------------------------------
    # ETAPE 1 : Staging
    # ----------------------------------------------------------------
    reader = StagingReader(engine, chunk_size=int(settings['chunk_size']))

    def _staging(control):
        if staging_csv:
            control.check()
            load_staging_csv(engine, staging_csv)
        rows = []
        for record in reader.read_all():
            control.check()
            rows.append(record)
        return rows

    results = _run_stages(ctx, [('staging', _staging)], 1, timeout)
    _record(results)
    statut, records, _, _, _ = results['staging']
    records = records or []

    # ----------------------------------------------------------------
    # ETAPE 2 : Dimensions (independantes)
    # ----------------------------------------------------------------
    dim_stages = [
        (spec.stage_name,
         lambda control, resolver=resolvers[spec.name]:
             load_dimension(ctx, resolver, records, control=control))
        for spec in DIMENSIONS
    ]
    _record(_run_stages(ctx, dim_stages, workers, timeout))

    # ----------------------------------------------------------------
    # ETAPE 3 : Faits (apres les trois dimensions)
    # ----------------------------------------------------------------
    results = _run_stages(
        ctx,
        [('fact_sales', lambda control: load_fact_sales(ctx, loader, records, control=control))],
        1, timeout
    )
    _record(results)
    statut, load_result, _, _, _ = results['fact_sales']
    if load_result is not None:
        rapport['load_result'] = load_result.as_dict()

    # ----------------------------------------------------------------
    # Notifications
    # ----------------------------------------------------------------
    if notify:
        smtp_config = get_smtp_config(settings)
        for etape, info in rapport['etapes'].items():
            if info['statut'] == STATUS_FAILED:
                send_error_email(etape, info['erreur'], rapport, smtp_config)
        if rapport['success']:
            send_success_email(rapport, smtp_config)

    logger.info(f"Run {ctx.run_id} termine ({'SUCCES' if rapport['success'] else 'ECHEC'})")
    return rapport


def main(argv=None):
    parser = argparse.ArgumentParser(description='ETL Ventes - Pipeline principal')
    parser.add_argument('--full', action='store_true', help='Pipeline complet')
    parser.add_argument('--summary', action='store_true', help='Afficher la vue v_sales_summary')
    parser.add_argument('--deploy', action='store_true', help='Creer le schema avant le run')
    parser.add_argument('--staging-csv', help='CSV a charger dans stg_sales avant le run')
    parser.add_argument('--sample', action='store_true', help='Charger le CSV d\'exemple fourni')
    parser.add_argument('--config', help='Fichier de configuration (defaut: sales_dwh.conf)')
    parser.add_argument('--database-url', help='URL SQLAlchemy de l\'entrepot')
    parser.add_argument('--timeout', type=float, help='Timeout par etape (secondes)')
    parser.add_argument('--workers', type=int, help='Nombre de threads')
    parser.add_argument('--rerun-policy', choices=['skip', 'append'], help='Politique de rechargement des faits')
    parser.add_argument('--report', help='Chemin JSON pour ecrire le rapport du run')
    parser.add_argument('--notify', action='store_true', help='Envoyer les notifications email')
    args = parser.parse_args(argv)

    if not any([args.full, args.summary]):
        args.full = True

    setup_logging()

    print("=" * 60)
    print("ETL VENTES - PIPELINE SCHEMA EN ETOILE")
    print(f"Date: {datetime.now().isoformat()}")
    print("=" * 60)

    try:
        config = load_config(args.config, overrides={
            'database_url': args.database_url,
            'stage_timeout': args.timeout,
            'max_workers': args.workers,
            'fact_rerun_policy': args.rerun_policy,
        })
        engine = create_engine(get_connection_string(config))
        if args.deploy:
            deploy_schema(engine)
            print("[OK] Schema deploye")
    except (ValueError, SQLAlchemyError) as e:
        logger.error(f"Configuration / connexion impossible : {e}")
        print(f"[ERROR] {e}")
        return 1

    success = True

    if args.full:
        staging_csv = args.staging_csv or (str(SAMPLE_CSV) if args.sample else None)
        try:
            rapport = run_pipeline(engine, config, staging_csv=staging_csv, notify=args.notify)
        except (EtlError, SQLAlchemyError, ValueError) as e:
            logger.error(f"Pipeline interrompu : {e}")
            print(f"[ERROR] {e}")
            return 1

        success = rapport['success']

        print("\n" + "=" * 60)
        print("RESUME DU PIPELINE ETL")
        print("=" * 60)
        for etape, info in rapport['etapes'].items():
            detail = f" - {info['erreur']}" if info['erreur'] else ''
            print(f"  {etape:<15} {info['statut']:<8} {info['nb_lignes']:>6} lignes "
                  f"({info['duree_sec']:.1f}s){detail}")
        load = rapport['load_result'] or {}
        print(f"Faits inseres    : {load.get('inserted', 0)}")
        print(f"Lignes rejetees  : {load.get('rejected', 0)}")
        print(f"Lignes ignorees  : {load.get('skipped', 0)}")
        print(f"Statut           : {'SUCCES' if success else 'ECHEC'}")
        print("=" * 60)

        if args.report:
            Path(args.report).write_text(json.dumps(rapport, ensure_ascii=False, indent=2, default=str))
            logger.info(f"Rapport ecrit dans {args.report}")

    if args.summary:
        try:
            df = read_summary(engine, limit=20)
        except SQLAlchemyError as e:
            logger.error(f"Lecture v_sales_summary impossible : {e}")
            return 1
        print("\n[V_SALES_SUMMARY] 20 dernieres ventes")
        print(df.to_string(index=False) if not df.empty else "  (vide)")

    return 0 if success else 1


if __name__ == '__main__':
    sys.exit(main())
