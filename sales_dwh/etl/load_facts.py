"""
ETL : Chargement de la table de faits fact_sales

Pour chaque ligne de staging :
1. TotalAmount calcule si absent ou nul (quantite x prix unitaire)
2. Resolution des cles client / produit / commercial
3. Les trois cles resolues -> une ligne de faits
   Sinon -> rejet dans log_erreurs (cles naturelles + raison), le lot continue

Seules les erreurs systemiques (destination injoignable...) interrompent le lot.
Faits et rejets d'un lot sont ecrits dans une seule transaction.

Politique de rechargement (fact_rerun_policy) :
- skip   : une vente deja chargee est ignoree. La vente est reconnue par son
           empreinte (client, produit, commercial, date, quantite, prix) et
           non par staging_id, qui est reutilise apres une purge du staging.
           Des ventes identiques sont comptees : N lignes identiques deja
           chargees -> seules les occurrences au-dela de N sont inserees.
- append : les faits sont toujours ajoutes
"""

import hashlib
import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from sqlalchemy import select, insert
from sqlalchemy.exc import DBAPIError

from .audit import StageControl
from .config import RERUN_POLICIES
from .errors import ValidationError, SystemicError
from .load_dimensions import DIMENSIONS, Resolved
from .schema import fact_sales

logger = logging.getLogger('etl_facts')

CENT = Decimal('0.01')


@dataclass
class LoadResult:
    inserted: int = 0
    rejected: int = 0
    skipped: int = 0

    def as_dict(self) -> dict:
        return {'inserted': self.inserted, 'rejected': self.rejected, 'skipped': self.skipped}


def _as_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def derive_total_amount(quantity, unit_price, total_amount=None) -> Decimal:
    """Montant fourni s'il est renseigne et non nul, sinon quantite x prix."""
    if total_amount is not None and _as_decimal(total_amount) != 0:
        return _as_decimal(total_amount)
    if quantity is None or unit_price is None:
        raise ValidationError("quantite ou prix unitaire absent, montant non calculable")
    return (Decimal(int(quantity)) * _as_decimal(unit_price)).quantize(CENT, rounding=ROUND_HALF_UP)


def record_fingerprint(record) -> str:
    """Empreinte d'une vente, stable d'un chargement du staging a l'autre."""
    parts = [
        (record.customer_code or '').strip(),
        (record.product_name or '').strip(),
        (record.sales_rep or '').strip(),
        record.sale_date.isoformat() if record.sale_date else '',
        '' if record.quantity is None else str(int(record.quantity)),
        '' if record.unit_price is None
        else str(_as_decimal(record.unit_price).quantize(CENT, rounding=ROUND_HALF_UP)),
    ]
    return hashlib.sha256('|'.join(parts).encode('utf-8')).hexdigest()


def validate_record(record):
    if record.sale_date is None:
        raise ValidationError("date de vente absente")
    if record.quantity is None:
        raise ValidationError("quantite absente")
    if record.quantity < 0:
        raise ValidationError(f"quantite negative ({record.quantity})")
    if record.unit_price is None:
        raise ValidationError("prix unitaire absent")
    if record.unit_price < 0:
        raise ValidationError(f"prix unitaire negatif ({record.unit_price})")


class FactLoader:

    def __init__(self, ctx, resolvers: dict, max_workers: int = 1,
                 rerun_policy: str = 'skip', chunk_size: int = 500):
        if rerun_policy not in RERUN_POLICIES:
            raise ValueError(f"fact_rerun_policy invalide: {rerun_policy!r} "
                             f"(attendu: {', '.join(RERUN_POLICIES)})")
        self.ctx = ctx
        self.resolvers = resolvers
        self.max_workers = max(1, max_workers)
        self.rerun_policy = rerun_policy
        self.chunk_size = chunk_size
        self.engine = next(iter(resolvers.values())).engine

    def _rejection(self, record, reason: str, error_type: str) -> dict:
        return {
            'run_id': self.ctx.run_id,
            'stage_name': 'fact_sales',
            'staging_id': record.staging_id,
            'customer_code': record.customer_code,
            'product_name': record.product_name,
            'sales_rep': record.sales_rep,
            'error_type': error_type,
            'reason': reason,
        }

    def _prepare(self, record, control: StageControl):
        """Retourne ('ok', ligne de faits) ou ('reject', rejet)."""
        control.check()
        try:
            validate_record(record)
            total = derive_total_amount(record.quantity, record.unit_price, record.total_amount)
        except ValidationError as e:
            return 'reject', self._rejection(record, str(e), 'ValidationError')

        keys = {}
        failures = []
        for spec in DIMENSIONS:
            natural_key, attributes = spec.extract(record)
            resolution = self.resolvers[spec.name].try_resolve(natural_key, attributes)
            if isinstance(resolution, Resolved):
                keys[spec.key_column] = resolution.key
            else:
                failures.append(resolution)

        if failures:
            reason = '; '.join(f.reason for f in failures)
            return 'reject', self._rejection(record, reason, failures[0].error_type)

        return 'ok', {
            'run_id': self.ctx.run_id,
            'staging_id': record.staging_id,
            'source_hash': record_fingerprint(record),
            **keys,
            'sale_date': record.sale_date,
            'quantity': record.quantity,
            'unit_price': _as_decimal(record.unit_price),
            'total_amount': total,
            'region': record.region,
            'load_date': datetime.now(),
        }

    def _loaded_fingerprints(self) -> Counter:
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(fact_sales.c.source_hash).where(fact_sales.c.source_hash.isnot(None))
                ).scalars().all()
        except DBAPIError as e:
            raise SystemicError(f"Lecture fact_sales impossible: {e}") from e
        return Counter(rows)

    def _write(self, facts: list, rejections: list, control: StageControl):
        """Faits + rejets en une transaction, commitee seulement si l'etape vit encore."""
        try:
            with self.engine.connect() as conn:
                for i in range(0, len(facts), self.chunk_size):
                    control.check()
                    conn.execute(insert(fact_sales), facts[i:i + self.chunk_size])
                self.ctx.errors.record(rejections, conn)
                control.commit(conn)
        except DBAPIError as e:
            raise SystemicError(f"Insertion fact_sales impossible: {e}") from e

    def load_batch(self, records: Iterable, control: StageControl = None) -> LoadResult:
        control = control or StageControl('fact_sales')
        result = LoadResult()
        records = list(records)

        if self.rerun_policy == 'skip':
            loaded = self._loaded_fingerprints()
            pending = []
            for record in records:
                fingerprint = record_fingerprint(record)
                if loaded[fingerprint] > 0:
                    loaded[fingerprint] -= 1
                else:
                    pending.append(record)
            result.skipped = len(records) - len(pending)
            if result.skipped:
                logger.info(f"[{self.ctx.run_id}] fact_sales: {result.skipped} lignes deja chargees ignorees")
        else:
            pending = records

        if self.max_workers > 1 and len(pending) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                prepared = list(executor.map(lambda r: self._prepare(r, control), pending))
        else:
            prepared = [self._prepare(r, control) for r in pending]

        facts = [row for status, row in prepared if status == 'ok']
        rejections = [row for status, row in prepared if status == 'reject']

        if facts or rejections:
            self._write(facts, rejections, control)
        for rejection in rejections:
            logger.warning(f"[{self.ctx.run_id}] Rejet staging_id={rejection['staging_id']} "
                           f"({rejection['customer_code']}, {rejection['product_name']}, "
                           f"{rejection['sales_rep']}): {rejection['reason']}")

        result.inserted = len(facts)
        result.rejected = len(rejections)
        return result


def load_fact_sales(ctx, loader: FactLoader, records: Iterable,
                    control: StageControl = None) -> LoadResult:
    result = loader.load_batch(records, control)
    logger.info(f"[{ctx.run_id}] fact_sales: {result.inserted} lignes inserees, "
                f"{result.rejected} rejetees, {result.skipped} ignorees")
    return result
