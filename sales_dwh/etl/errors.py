"""
Taxonomie des erreurs ETL.

- Erreurs de ligne (ValidationError, UnresolvedReferenceError) : la ligne est
  rejetee vers log_erreurs, le lot continue.
- Erreurs d'etape (SystemicError) : l'etape est abandonnee et tracee en FAILED
  dans log_etl, les etapes independantes continuent.
"""


class EtlError(Exception):
    """Erreur de base du pipeline."""


class ValidationError(EtlError):
    """Cle naturelle ou champ obligatoire absent / mal forme."""


class UnresolvedReferenceError(EtlError):
    """Aucune ligne de dimension trouvee et aucune n'a pu etre creee."""


class SystemicError(EtlError):
    """Destination injoignable, schema incoherent : fatal pour l'etape."""


class AuditStateError(EtlError):
    """Entree de log deja finalisee (complete/fail appele deux fois)."""


class StageCancelledError(EtlError):
    """Etape annulee (timeout) : plus aucune ecriture apres le fail()."""
