"""SQLAlchemy models for the royalty statement engine."""

from app.models.tenant import Tenant
from app.models.author import Author
from app.models.title import Title
from app.models.contract import Contract, RateTier
from app.models.sales import ReturnRecord, SaleRecord
from app.models.statement import Statement

__all__ = [
    "Tenant",
    "Author",
    "Title",
    "Contract",
    "RateTier",
    "SaleRecord",
    "ReturnRecord",
    "Statement",
]
