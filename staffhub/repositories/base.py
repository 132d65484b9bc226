"""Tenant-scoped repository base.

Every StaffHub table that holds customer data carries a ``company_id``.
Lookups through ``get_for_company`` treat rows of another company exactly
like missing rows, so a guessed id never reveals that it exists.
"""

from typing import Generic, Optional, Type, TypeVar

from sqlalchemy.orm import Query, Session

from ..database import Base
from ..exceptions import NotFoundError

ModelT = TypeVar("ModelT", bound=Base)


class TenantRepository(Generic[ModelT]):
    model_class: Type[ModelT]
    not_found_error: Type[NotFoundError]

    def __init__(self, db: Session):
        self.db = db

    def scoped(self, company_id: Optional[str]) -> Query:
        """Rows of one company. ``None`` selects rows without a company."""
        return self.db.query(self.model_class).filter(self.model_class.company_id == company_id)

    def find(self, entity_id: str) -> Optional[ModelT]:
        return self.db.get(self.model_class, entity_id)

    def get_for_company(self, entity_id: str, company_id: Optional[str]) -> ModelT:
        entity = self.find(entity_id)
        if entity is None or entity.company_id != company_id:
            raise self.not_found_error(entity_id)
        return entity

    def add(self, entity: ModelT) -> ModelT:
        """Stage *entity* and flush so generated columns are populated. The caller commits."""
        self.db.add(entity)
        self.db.flush()
        return entity
