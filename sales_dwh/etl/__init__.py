"""
Module ETL - Schema en etoile des ventes

Ce module alimente l'entrepot de ventes a partir de la zone de staging :
- staging.py : Lecture de stg_sales (et chargement CSV)
- load_dimensions.py : Dimensions client, produit, commercial (insert-if-absent)
- load_facts.py : Table de faits fact_sales (rejets vers log_erreurs)
- audit.py : Journal d'execution log_etl
- summary.py : Vue de reporting v_sales_summary
- run_etl.py : Pipeline principal d'orchestration
"""

__version__ = '1.0.0'
__author__ = 'Data Engineering Team'
