"""
ETL : Chargement des Dimensions (client, produit, commercial)

Chaque dimension est alimentee en "insert-if-absent" :
- cle naturelle deja connue -> cle de substitution existante, aucune mise a jour
  (pas de SCD, la premiere occurrence gagne) ;
- cle naturelle inconnue    -> nouvelle ligne, nouvelle cle de substitution.

La creation est atomique par cle naturelle : un verrou par cle dans le
process, la contrainte d'unicite de la table pour les autres ecrivains.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Iterable, NamedTuple, Optional, Union

from sqlalchemy import select, insert
from sqlalchemy.exc import IntegrityError, DBAPIError

from .audit import StageControl
from .errors import ValidationError, UnresolvedReferenceError, SystemicError
from .schema import dim_customer, dim_product, dim_sales_rep

logger = logging.getLogger('etl_dimensions')


@dataclass(frozen=True)
class DimensionSpec:
    name: str
    table: object
    key_column: str
    natural_column: str
    record_field: str
    attributes: dict  # colonne dimension -> champ StagingRecord
    stage_name: str

    def extract(self, record):
        """(cle naturelle, attributs) d'une ligne de staging."""
        natural_key = getattr(record, self.record_field)
        attributes = {col: getattr(record, fld) for col, fld in self.attributes.items()}
        return natural_key, attributes


CUSTOMER = DimensionSpec(
    name='customer', table=dim_customer, key_column='customer_key',
    natural_column='customer_code', record_field='customer_code',
    attributes={'customer_name': 'customer_name'}, stage_name='dim_customer',
)

PRODUCT = DimensionSpec(
    name='product', table=dim_product, key_column='product_key',
    natural_column='product_name', record_field='product_name',
    attributes={'product_category': 'product_category'}, stage_name='dim_product',
)

SALES_REP = DimensionSpec(
    name='sales_rep', table=dim_sales_rep, key_column='sales_rep_key',
    natural_column='sales_rep_name', record_field='sales_rep',
    attributes={'region': 'region'}, stage_name='dim_sales_rep',
)

DIMENSIONS = (CUSTOMER, PRODUCT, SALES_REP)


class Resolved(NamedTuple):
    key: int


class Unresolved(NamedTuple):
    reason: str
    error_type: str


Resolution = Union[Resolved, Unresolved]


def normalize_natural_key(natural_key) -> str:
    if natural_key is None:
        raise ValidationError("cle naturelle absente")
    value = str(natural_key).strip()
    if not value:
        raise ValidationError("cle naturelle vide")
    return value


class DimensionResolver:
    """Resolution cle naturelle -> cle de substitution pour une dimension."""

    def __init__(self, engine, spec: DimensionSpec):
        self.engine = engine
        self.spec = spec
        self.created = 0
        self._cache = {}
        self._locks = {}
        self._locks_guard = threading.Lock()
        self._counter_guard = threading.Lock()

    @property
    def _key_col(self):
        return self.spec.table.c[self.spec.key_column]

    @property
    def _natural_col(self):
        return self.spec.table.c[self.spec.natural_column]

    def _lock_for(self, natural_key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(natural_key)
            if lock is None:
                lock = self._locks[natural_key] = threading.Lock()
            return lock

    def preload(self) -> int:
        """Charge le mapping cle naturelle -> cle de substitution en memoire."""
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(select(self._natural_col, self._key_col)).all()
        except DBAPIError as e:
            raise SystemicError(f"Lecture {self.spec.table.name} impossible: {e}") from e
        self._cache.update({natural: key for natural, key in rows})
        return len(rows)

    def _lookup(self, natural_key: str) -> Optional[int]:
        with self.engine.connect() as conn:
            return conn.execute(
                select(self._key_col).where(self._natural_col == natural_key)
            ).scalar()

    def _insert(self, natural_key: str, attributes: dict) -> int:
        values = {col: attributes.get(col) for col in self.spec.attributes}
        values[self.spec.natural_column] = natural_key
        with self.engine.begin() as conn:
            result = conn.execute(insert(self.spec.table).values(**values))
            return result.inserted_primary_key[0]

    def resolve(self, natural_key, attributes: dict = None) -> int:
        key = normalize_natural_key(natural_key)

        surrogate = self._cache.get(key)
        if surrogate is not None:
            return surrogate

        with self._lock_for(key):
            surrogate = self._cache.get(key)
            if surrogate is not None:
                return surrogate

            try:
                surrogate = self._lookup(key)
                if surrogate is None:
                    try:
                        surrogate = self._insert(key, attributes or {})
                        with self._counter_guard:
                            self.created += 1
                        logger.debug(f"{self.spec.table.name}: {key} -> {surrogate} (nouveau)")
                    except IntegrityError:
                        # Cree entre-temps par un autre ecrivain
                        surrogate = self._lookup(key)
            except IntegrityError as e:
                raise UnresolvedReferenceError(f"{self.spec.name} '{key}': {e.orig}") from e
            except DBAPIError as e:
                raise SystemicError(f"Acces {self.spec.table.name} impossible: {e}") from e

            if surrogate is None:
                raise UnresolvedReferenceError(
                    f"{self.spec.name} '{key}' introuvable et non creable"
                )

            self._cache[key] = surrogate

        # Cle en cache : le verrou ne sert plus
        with self._locks_guard:
            self._locks.pop(key, None)
        return surrogate

    def try_resolve(self, natural_key, attributes: dict = None) -> Resolution:
        try:
            return Resolved(self.resolve(natural_key, attributes))
        except ValidationError as e:
            return Unresolved(f"{self.spec.name}: {e}", 'ValidationError')
        except UnresolvedReferenceError as e:
            return Unresolved(str(e), 'UnresolvedReferenceError')


def build_resolvers(engine, specs=DIMENSIONS) -> dict:
    return {spec.name: DimensionResolver(engine, spec) for spec in specs}


def load_dimension(ctx, resolver: DimensionResolver, records: Iterable,
                   control: StageControl = None) -> int:
    """
    Alimente une dimension a partir des lignes de staging.

    Returns: nombre de lignes creees. Les lignes mal formees sont ignorees ici,
    elles seront rejetees par le chargement des faits.
    Chaque resolution passe par control.guard() : apres annulation de l'etape,
    plus aucune ligne n'est creee.
    """
    control = control or StageControl(resolver.spec.stage_name)
    spec = resolver.spec
    resolver.preload()
    before = resolver.created
    invalid = 0

    for record in records:
        natural_key, attributes = spec.extract(record)
        with control.guard():
            try:
                resolver.resolve(natural_key, attributes)
            except ValidationError as e:
                invalid += 1
                logger.warning(f"[{ctx.run_id}] {spec.stage_name}: ligne {record.staging_id} ignoree ({e})")

    created = resolver.created - before
    logger.info(f"[{ctx.run_id}] {spec.table.name}: {created} lignes inserees"
                + (f", {invalid} lignes invalides" if invalid else ""))
    return created
