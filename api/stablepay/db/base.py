"""Import all models here for Alembic autogenerate."""

from stablepay.db.base_class import Base
from stablepay.models import rule, wallet  # noqa: F401

__all__ = ["Base"]
