"""
Tests du pipeline complet (staging -> dimensions -> faits).
"""

import io
import json
import os
import threading
import time
import unittest
from contextlib import redirect_stdout
from datetime import date
from pathlib import Path
from unittest.mock import patch

from sqlalchemy import delete

from dwh_testing import WarehouseTestCase, sample_rows

from sales_dwh.etl import run_etl
from sales_dwh.etl.audit import get_execution_log, get_rejections
from sales_dwh.etl.load_dimensions import load_dimension
from sales_dwh.etl.load_facts import load_fact_sales
from sales_dwh.etl.run_etl import run_pipeline, main
from sales_dwh.etl.schema import stg_sales

STAGES = ['staging', 'dim_customer', 'dim_product', 'dim_sales_rep', 'fact_sales']


class TestRunPipeline(WarehouseTestCase):

    config = {'max_workers': 1}

    def test_full_run(self):
        """10 ventes / 5 clients / 5 produits / 5 commerciaux."""
        self.insert_staging(sample_rows(10))
        rapport = run_pipeline(self.engine, self.config)

        self.assertTrue(rapport['success'])
        self.assertEqual(self.count('dim_customer'), 5)
        self.assertEqual(self.count('dim_product'), 5)
        self.assertEqual(self.count('dim_sales_rep'), 5)
        self.assertEqual(self.count('fact_sales'), 10)
        self.assertEqual(rapport['load_result'], {'inserted': 10, 'rejected': 0, 'skipped': 0})

        log = get_execution_log(self.engine, rapport['run_id'])
        self.assertEqual(sorted(log['stage_name']), sorted(STAGES))
        self.assertTrue((log['status'] == 'Success').all())
        self.assertEqual(rapport['etapes']['staging']['nb_lignes'], 10)
        self.assertEqual(rapport['etapes']['dim_customer']['nb_lignes'], 5)
        self.assertEqual(rapport['etapes']['fact_sales']['nb_lignes'], 10)

    def test_parallel_dimensions(self):
        self.insert_staging(sample_rows(10))
        rapport = run_pipeline(self.engine, {'max_workers': 3})
        self.assertTrue(rapport['success'])
        self.assertEqual(self.count('fact_sales'), 10)

    def test_rerun_skip(self):
        """Second run : dimensions inchangees, aucun fait en double."""
        self.insert_staging(sample_rows(10))
        run_pipeline(self.engine, self.config)
        rapport = run_pipeline(self.engine, self.config)

        self.assertTrue(rapport['success'])
        self.assertEqual(rapport['load_result'], {'inserted': 0, 'rejected': 0, 'skipped': 10})
        self.assertEqual(rapport['etapes']['dim_product']['nb_lignes'], 0)
        self.assertEqual(self.count('dim_customer'), 5)
        self.assertEqual(self.count('fact_sales'), 10)

    def test_rerun_append(self):
        self.insert_staging(sample_rows(10))
        config = dict(self.config, fact_rerun_policy='append')
        run_pipeline(self.engine, config)
        run_pipeline(self.engine, config)
        self.assertEqual(self.count('dim_customer'), 5)
        self.assertEqual(self.count('fact_sales'), 20)

    def test_rejected_row_does_not_fail_run(self):
        rows = sample_rows(4)
        rows[0]['customer_code'] = None
        self.insert_staging(rows)

        rapport = run_pipeline(self.engine, self.config)

        self.assertTrue(rapport['success'])
        self.assertEqual(rapport['load_result']['inserted'], 3)
        self.assertEqual(rapport['load_result']['rejected'], 1)
        rejets = get_rejections(self.engine, rapport['run_id'])
        self.assertEqual(len(rejets), 1)
        self.assertEqual(rejets.iloc[0]['product_name'], 'Produit 1')

    def test_sample_csv(self):
        rapport = run_pipeline(self.engine, self.config, staging_csv=str(run_etl.SAMPLE_CSV))
        self.assertTrue(rapport['success'])
        self.assertEqual(self.count('dim_customer'), 6)
        self.assertEqual(self.count('dim_product'), 5)
        self.assertEqual(self.count('dim_sales_rep'), 5)
        self.assertEqual(rapport['load_result'], {'inserted': 11, 'rejected': 1, 'skipped': 0})

    def test_failed_stage_does_not_stop_others(self):
        """Une dimension en echec : les autres etapes se terminent."""
        self.insert_staging(sample_rows(10))

        def flaky(ctx, resolver, records, control=None):
            if resolver.spec.name == 'product':
                raise RuntimeError('dim_product indisponible')
            return load_dimension(ctx, resolver, records, control=control)

        with patch('sales_dwh.etl.run_etl.load_dimension', side_effect=flaky):
            rapport = run_pipeline(self.engine, self.config)

        self.assertFalse(rapport['success'])
        etapes = rapport['etapes']
        self.assertEqual(etapes['dim_product']['statut'], 'Failed')
        self.assertIn('indisponible', etapes['dim_product']['erreur'])
        for stage in ('staging', 'dim_customer', 'dim_sales_rep', 'fact_sales'):
            self.assertEqual(etapes[stage]['statut'], 'Success')
        self.assertEqual(self.count('dim_customer'), 5)
        self.assertEqual(self.count('fact_sales'), 10)

        log = get_execution_log(self.engine, rapport['run_id']).set_index('stage_name')
        self.assertEqual(log.loc['dim_product', 'status'], 'Failed')
        self.assertIn('RuntimeError', log.loc['dim_product', 'error_message'])

    def test_stage_timeout(self):
        """Etape trop longue : Failed au timeout, annulee, le run continue."""
        self.insert_staging(sample_rows(5))
        stopped = threading.Event()

        def slow(ctx, resolver, records, control=None):
            if resolver.spec.name == 'product':
                try:
                    while True:
                        control.check()
                        time.sleep(0.02)
                finally:
                    stopped.set()
            return load_dimension(ctx, resolver, records, control=control)

        with patch('sales_dwh.etl.run_etl.load_dimension', side_effect=slow):
            rapport = run_pipeline(self.engine, dict(self.config, stage_timeout=1.0))

        etapes = rapport['etapes']
        self.assertFalse(rapport['success'])
        self.assertEqual(etapes['dim_product']['statut'], 'Failed')
        self.assertIn('Timeout', etapes['dim_product']['erreur'])
        self.assertTrue(stopped.wait(5))
        for stage in ('dim_customer', 'dim_sales_rep', 'fact_sales'):
            self.assertEqual(etapes[stage]['statut'], 'Success')

        log = get_execution_log(self.engine, rapport['run_id']).set_index('stage_name')
        self.assertEqual(log.loc['dim_product', 'status'], 'Failed')

    def test_timeout_counts_from_stage_start(self):
        """Etapes en file d'attente : chacune dispose de son propre delai."""
        self.insert_staging(sample_rows(5))

        def steady(ctx, resolver, records, control=None):
            time.sleep(0.8)
            return load_dimension(ctx, resolver, records, control=control)

        with patch('sales_dwh.etl.run_etl.load_dimension', side_effect=steady):
            rapport = run_pipeline(self.engine, dict(self.config, stage_timeout=1.5))

        self.assertTrue(rapport['success'])
        for stage in ('dim_customer', 'dim_product', 'dim_sales_rep'):
            self.assertEqual(rapport['etapes'][stage]['statut'], 'Success')
            # Duree propre a l'etape, pas celle du groupe
            self.assertLess(rapport['etapes'][stage]['duree_sec'], 1.5)

    def test_timed_out_fact_stage_writes_nothing(self):
        """Faits annules au timeout : aucun fait commite apres le Failed."""
        self.insert_staging(sample_rows(5))

        def late(ctx, loader, records, control=None):
            while not control.cancelled:
                time.sleep(0.02)
            return load_fact_sales(ctx, loader, records, control=control)

        with patch('sales_dwh.etl.run_etl.load_fact_sales', side_effect=late):
            rapport = run_pipeline(self.engine, dict(self.config, stage_timeout=0.5))

        self.assertEqual(rapport['etapes']['fact_sales']['statut'], 'Failed')
        time.sleep(0.3)
        self.assertEqual(self.count('fact_sales'), 0)
        self.assertEqual(self.count('dim_customer'), 5)

    def test_staging_reload_is_not_skipped(self):
        """Staging purge puis recharge : les nouvelles ventes sont chargees."""
        self.insert_staging(sample_rows(5))
        run_pipeline(self.engine, self.config)

        with self.engine.begin() as conn:
            conn.execute(delete(stg_sales))
        self.insert_staging(sample_rows(5, start=date(2024, 6, 1)))
        rapport = run_pipeline(self.engine, self.config)

        self.assertEqual(rapport['load_result'], {'inserted': 5, 'rejected': 0, 'skipped': 0})
        self.assertEqual(self.count('fact_sales'), 10)

    def test_invalid_rerun_policy(self):
        """Politique inconnue : refus avant toute etape, aucun fait en double."""
        self.insert_staging(sample_rows(5))
        run_pipeline(self.engine, self.config)
        with self.assertRaises(ValueError):
            run_pipeline(self.engine, dict(self.config, fact_rerun_policy='SKIP'))
        self.assertEqual(self.count('fact_sales'), 5)
        self.assertEqual(self.count('log_etl'), 5)

    def test_notifications(self):
        self.insert_staging(sample_rows(3))
        with patch('sales_dwh.etl.run_etl.send_success_email') as success, \
                patch('sales_dwh.etl.run_etl.send_error_email') as error:
            rapport = run_pipeline(self.engine, self.config, notify=True)

        success.assert_called_once()
        self.assertIs(success.call_args[0][0], rapport)
        error.assert_not_called()

    def test_error_notification(self):
        self.insert_staging(sample_rows(3))

        def broken(ctx, resolver, records, control=None):
            raise RuntimeError('panne')

        with patch('sales_dwh.etl.run_etl.load_dimension', side_effect=broken), \
                patch('sales_dwh.etl.run_etl.send_success_email') as success, \
                patch('sales_dwh.etl.run_etl.send_error_email') as error:
            run_pipeline(self.engine, self.config, notify=True)

        success.assert_not_called()
        self.assertEqual(error.call_count, 3)


class TestMain(WarehouseTestCase):

    def run_main(self, argv):
        out = io.StringIO()
        with patch('sales_dwh.etl.run_etl.setup_logging'), \
                patch.dict(os.environ, {'SALES_DWH_CONFIG': str(Path(self.tmpdir) / 'absent.conf')}), \
                redirect_stdout(out):
            code = main(argv)
        return code, out.getvalue()

    def test_main_with_sample(self):
        db_url = f"sqlite:///{Path(self.tmpdir) / 'cli.db'}"
        report = Path(self.tmpdir) / 'rapport.json'

        code, out = self.run_main(['--database-url', db_url, '--deploy', '--sample',
                                   '--workers', '1', '--report', str(report)])

        self.assertEqual(code, 0)
        self.assertIn('RESUME DU PIPELINE ETL', out)
        rapport = json.loads(report.read_text())
        self.assertTrue(rapport['success'])
        self.assertEqual(rapport['load_result']['inserted'], 11)
        self.assertEqual(rapport['load_result']['rejected'], 1)

    def test_main_summary(self):
        db_url = f"sqlite:///{Path(self.tmpdir) / 'dwh_test.db'}"
        self.insert_staging(sample_rows(3))
        code, out = self.run_main(['--database-url', db_url, '--full', '--summary', '--workers', '1'])
        self.assertEqual(code, 0)
        self.assertIn('V_SALES_SUMMARY', out)
        self.assertIn('Produit 3', out)

    def test_main_without_configuration(self):
        with patch.dict(os.environ, {}, clear=True):
            code, out = self.run_main([])
        self.assertEqual(code, 1)
        self.assertIn('[ERROR]', out)


if __name__ == '__main__':
    unittest.main()
