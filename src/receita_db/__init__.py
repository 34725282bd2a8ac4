"""
Consolidated CNPJ registry in PostgreSQL.

Joins the Receita Federal open-data files (companies, branches, partners,
simplified tax regime) through an on-disk staging store and loads one
JSON document per CNPJ into PostgreSQL for lookup and search.
"""

__version__ = "0.1.0"

from receita_db.errors import (
    ConnectivityError,
    DatabaseError,
    NotFoundError,
    PartialIndexFailure,
    ReceitaDBError,
    StorageCorruption,
    ValidationError,
)

from receita_db.models import (
    BaseRecord,
    BranchRecord,
    ConsolidatedCompany,
    Page,
    PartnerRecord,
    SearchQuery,
    TaxRecord,
)

from receita_db.staging import StagingStore
from receita_db.consolidate import ConsolidationReport, Consolidator
from receita_db.postgres import ExtraIndexSpec, PostgreSQL
from receita_db.pipeline import import_all, stage_files

__all__ = [
    # Errors
    "ReceitaDBError",
    "ValidationError",
    "NotFoundError",
    "StorageCorruption",
    "ConnectivityError",
    "DatabaseError",
    "PartialIndexFailure",
    # Records
    "BaseRecord",
    "BranchRecord",
    "PartnerRecord",
    "TaxRecord",
    "ConsolidatedCompany",
    "SearchQuery",
    "Page",
    # Staging and consolidation
    "StagingStore",
    "Consolidator",
    "ConsolidationReport",
    "stage_files",
    "import_all",
    # PostgreSQL
    "PostgreSQL",
    "ExtraIndexSpec",
]
