"""Tenant resolution and provider grant lookup."""

import logging
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .database import CacheStore, TenantDB, ProviderGrantDB
from .errors import NotConnectedError, TenantInactiveError
from .models import GrantRegistration

logger = logging.getLogger(__name__)


class TenantResolver:
    """Maps tenant identifiers (id or slug) to tenant rows and active grants."""

    def __init__(self, store: CacheStore):
        self.store = store
        self.logger = logger.getChild('tenant_resolver')

    def find_tenant(self, session: Session, identifier: str) -> Optional[TenantDB]:
        """Find a tenant by id or slug without creating it."""
        return session.query(TenantDB).filter(
            or_(TenantDB.id == identifier, TenantDB.slug == identifier)
        ).order_by(TenantDB.created_at).first()

    def find_active_tenant(self, session: Session, identifier: str) -> Optional[TenantDB]:
        """Find a tenant for a read without provisioning it.

        Raises:
            TenantInactiveError: If the tenant has been deactivated
        """
        tenant = self.find_tenant(session, identifier)
        if tenant is not None and not tenant.is_active:
            raise TenantInactiveError(identifier)
        return tenant

    def get_tenant(self, session: Session, identifier: str) -> TenantDB:
        """Get a tenant by id or slug, auto-provisioning it on first reference.

        Args:
            session: Database session
            identifier: Tenant id or slug

        Returns:
            Tenant row

        Raises:
            TenantInactiveError: If the tenant has been deactivated
        """
        tenant = self.find_tenant(session, identifier)

        if tenant is None:
            tenant = TenantDB(id=identifier, slug=identifier, name=identifier)
            session.add(tenant)
            try:
                session.commit()
                self.logger.info(f"Provisioned tenant {identifier}")
            except IntegrityError:
                # Another request provisioned it first.
                session.rollback()
                tenant = self.find_tenant(session, identifier)

        if not tenant.is_active:
            raise TenantInactiveError(identifier)

        return tenant

    def get_grant(
        self,
        session: Session,
        tenant: TenantDB,
        account: Optional[str] = None
    ) -> ProviderGrantDB:
        """Pick the grant a sync or mutation should target.

        A named ``account`` matches a grant id or email. Otherwise the active
        primary grant is used, falling back to the oldest active grant.

        Raises:
            NotConnectedError: If no matching active grant exists
        """
        query = session.query(ProviderGrantDB).filter(
            ProviderGrantDB.tenant_id == tenant.id,
            ProviderGrantDB.is_active.is_(True)
        )

        if account:
            grant = query.filter(
                or_(ProviderGrantDB.grant_id == account, ProviderGrantDB.email == account)
            ).first()
        else:
            grant = query.order_by(
                ProviderGrantDB.is_primary.desc(), ProviderGrantDB.created_at.asc()
            ).first()

        if grant is None:
            raise NotConnectedError(tenant.slug, account)
        return grant

    def register_grant(
        self,
        session: Session,
        identifier: str,
        registration: GrantRegistration
    ) -> ProviderGrantDB:
        """Attach (or refresh) a provider grant for a tenant.

        Marking a grant primary clears the flag on the tenant's other grants.
        """
        tenant = self.get_tenant(session, identifier)

        grant = session.query(ProviderGrantDB).filter(
            ProviderGrantDB.tenant_id == tenant.id,
            ProviderGrantDB.grant_id == registration.grant_id
        ).first()

        if registration.is_primary:
            session.query(ProviderGrantDB).filter(
                ProviderGrantDB.tenant_id == tenant.id,
                ProviderGrantDB.grant_id != registration.grant_id
            ).update({ProviderGrantDB.is_primary: False}, synchronize_session='fetch')

        if grant is None:
            grant = ProviderGrantDB(tenant_id=tenant.id, grant_id=registration.grant_id)
            session.add(grant)

        grant.email = registration.email
        grant.provider = registration.provider
        grant.is_primary = registration.is_primary
        grant.is_active = True
        session.commit()

        self.logger.info(f"Registered grant {registration.grant_id} for tenant {tenant.slug}")
        return grant

    def deactivate_grant(self, session: Session, identifier: str, grant_id: str) -> bool:
        """Mark a grant inactive. Returns False when the tenant or grant is unknown."""
        tenant = self.find_tenant(session, identifier)
        if tenant is None:
            return False
        grant = session.query(ProviderGrantDB).filter(
            ProviderGrantDB.tenant_id == tenant.id,
            ProviderGrantDB.grant_id == grant_id
        ).first()
        if grant is None:
            return False
        grant.is_active = False
        session.commit()
        self.logger.info(f"Deactivated grant {grant_id} for tenant {tenant.slug}")
        return True
