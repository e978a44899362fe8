"""
Entity resolution: external customer email -> internal user, external product id -> internal product.

Both lookups are exact-match reads. The resolver never creates users or products. An
instance memoizes hits and misses, so building one resolver per reconciliation run
means each distinct id hits the store at most once per run.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from entitlement_sync.errors import StoreUnavailableError, UnknownCustomerError, UnknownProductMappingError
from entitlement_sync.models import Product, ProductMapping, UserAccount

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedProduct:
    id: str
    name: str


class EntityResolver:
    """Read-only resolver over the user directory and product-mapping table."""

    def __init__(self, db: Session, source: str):
        self.db = db
        self.source = source
        self._users: Dict[str, Optional[str]] = {}
        self._products: Dict[str, Optional[ResolvedProduct]] = {}

    def resolve_user(self, email: str) -> str:
        """
        Resolve a customer email to a user id.

        Raises:
            UnknownCustomerError: If no user has exactly this email
            StoreUnavailableError: If the directory cannot be read
        """
        if email not in self._users:
            try:
                row = self.db.query(UserAccount.id).filter(UserAccount.email == email).first()
            except SQLAlchemyError as e:
                self.db.rollback()
                raise StoreUnavailableError(f"Failed to look up user by email: {e}") from e
            self._users[email] = row.id if row else None

        user_id = self._users[email]
        if user_id is None:
            raise UnknownCustomerError(email)
        return user_id

    def resolve_product(self, external_product_id: str) -> ResolvedProduct:
        """
        Resolve an external product id (within this resolver's source) to a product.

        Raises:
            UnknownProductMappingError: If no mapping exists
            StoreUnavailableError: If the mapping table cannot be read
        """
        if external_product_id not in self._products:
            try:
                row = (
                    self.db.query(Product.id, Product.name)
                    .join(ProductMapping, ProductMapping.product_id == Product.id)
                    .filter(
                        ProductMapping.source == self.source,
                        ProductMapping.external_product_id == external_product_id,
                    )
                    .first()
                )
            except SQLAlchemyError as e:
                self.db.rollback()
                raise StoreUnavailableError(f"Failed to look up product mapping: {e}") from e
            self._products[external_product_id] = ResolvedProduct(id=row.id, name=row.name) if row else None
            if row:
                logger.debug(f"Resolved {self.source} product {external_product_id} -> {row.id}")

        product = self._products[external_product_id]
        if product is None:
            raise UnknownProductMappingError(external_product_id, self.source)
        return product
