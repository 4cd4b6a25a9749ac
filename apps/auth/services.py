import logging
import uuid
from typing import Iterable, Optional

from sqlalchemy import case, func, insert, literal, or_, select as sa_select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from apps.auth.errors import AccountCreateRaceUnresolved, AccountLookupFailed
from apps.auth.identity import IdentityClaims
from apps.auth.models import (
    LEGACY_COLUMN,
    LEGACY_PROVIDERS,
    PROVIDER_COLUMNS,
    SubscriptionStatus,
    User,
    UserRole,
    utcnow,
)
from database import Database, is_retryable_connection_error

logger = logging.getLogger(__name__)

users = User.__table__


def _param(value, column_name: str):
    """Typed bind parameter; None renders as NULL so COALESCE keeps the stored value."""
    return literal(value, users.c[column_name].type)


def _fill_if_empty(column_name: str, value: Optional[str]):
    column = users.c[column_name]
    return case(
        (or_(column.is_(None), column == ""), func.coalesce(_param(value or None, column_name), column)),
        else_=column,
    )


class AccountResolver:
    """Maps verified identity claims onto exactly one row of the shared users table."""

    def __init__(self, db: Database, admin_group_id: Optional[str] = None, admin_emails: Iterable[str] = ()):
        self.db = db
        self.admin_group_id = admin_group_id or None
        self.admin_emails = {email.lower() for email in admin_emails}

    def is_admin(self, claims: IdentityClaims) -> bool:
        if self.admin_group_id and self.admin_group_id in claims.groups:
            return True
        return bool(claims.email) and claims.email.lower() in self.admin_emails

    # --- Predicates ---

    def _provider_match(self, table, claims: IdentityClaims):
        return or_(
            table.c[PROVIDER_COLUMNS[claims.provider]] == claims.provider_id,
            table.c[LEGACY_COLUMN] == claims.provider_id,
        )

    def _identity_match(self, table, claims: IdentityClaims):
        condition = self._provider_match(table, claims)
        if claims.email:
            condition = or_(condition, func.lower(table.c.email) == claims.email.lower())
        return condition

    def _first(self, session: Session, condition) -> Optional[User]:
        statement = select(User).where(condition).order_by(User.created_at, User.id).limit(1)
        return session.exec(statement).first()

    # --- Read-only lookup ---

    def find(self, claims: IdentityClaims) -> Optional[User]:
        """Provider id, legacy id or email match. Never creates or links."""
        try:
            with self.db.session() as session:
                return self._first(session, self._identity_match(users, claims))
        except SQLAlchemyError as exc:
            raise self._lookup_failed(exc) from exc

    # --- Resolution ---

    def resolve(self, claims: IdentityClaims) -> User:
        try:
            with self.db.session() as session:
                user = self._first(session, self._provider_match(users, claims))

                if user is None and claims.email:
                    user = self._first(session, func.lower(users.c.email) == claims.email.lower())
                    if user is not None:
                        self._link(session, user, claims)

                if user is None:
                    user = self._create(session, claims)

                return self._reconcile(session, user, claims)
        except SQLAlchemyError as exc:
            raise self._lookup_failed(exc) from exc

    def _lookup_failed(self, exc: SQLAlchemyError) -> AccountLookupFailed:
        logger.error("Account store failure: %s", exc)
        return AccountLookupFailed(detail=str(exc), retryable=is_retryable_connection_error(exc))

    def _link(self, session: Session, user: User, claims: IdentityClaims):
        logger.info(
            "Linking %s account %s to existing user %s by email",
            claims.provider.value, claims.provider_id, user.id,
        )
        values = {PROVIDER_COLUMNS[claims.provider]: claims.provider_id, "updated_at": utcnow()}
        if claims.provider in LEGACY_PROVIDERS:
            values[LEGACY_COLUMN] = claims.provider_id
        session.connection().execute(update(users).where(users.c.id == user.id).values(**values))
        session.commit()

    def _create(self, session: Session, claims: IdentityClaims) -> User:
        admin = self.is_admin(claims)
        new_id = str(uuid.uuid4())
        now = utcnow()
        values = {
            "id": new_id,
            "email": claims.email,
            "first_name": claims.first_name,
            "last_name": claims.last_name,
            "role": (UserRole.ADMIN if admin else UserRole.COACH).value,
            "subscription_status": (SubscriptionStatus.ACTIVE if admin else SubscriptionStatus.UNPAID).value,
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        for provider, column in PROVIDER_COLUMNS.items():
            values[column] = claims.provider_id if provider == claims.provider else None
        values[LEGACY_COLUMN] = claims.provider_id if claims.provider in LEGACY_PROVIDERS else None

        existing = users.alias("existing")
        guarded_rows = sa_select(*[_param(value, name).label(name) for name, value in values.items()]).where(
            ~sa_select(existing.c.id).where(self._identity_match(existing, claims)).exists()
        )
        result = session.connection().execute(insert(users).from_select(list(values), guarded_rows))
        session.commit()

        if result.rowcount == 1:
            logger.info(
                "Created user %s via %s (role=%s, subscriptionStatus=%s)",
                new_id, claims.provider.value, values["role"], values["subscription_status"],
            )
            return session.get(User, new_id)

        logger.info("User for %s account %s was created concurrently, loading it", claims.provider.value, claims.provider_id)
        user = self._first(session, self._identity_match(users, claims))
        if user is None:
            logger.critical(
                "Guarded insert lost the race but no matching row exists (provider=%s, account=%s)",
                claims.provider.value, claims.provider_id,
            )
            raise AccountCreateRaceUnresolved(detail="Failed to load user after concurrent creation")
        return user

    def _reconcile(self, session: Session, user: User, claims: IdentityClaims) -> User:
        """Admin toggling, name backfill and provider linkage in one fixed-shape UPDATE."""
        admin = self.is_admin(claims)
        role = None
        status_fallback = None
        if admin and user.role != UserRole.ADMIN.value:
            logger.info("Promoting user %s to admin", user.id)
            role = UserRole.ADMIN.value
        elif not admin and user.role == UserRole.ADMIN.value:
            logger.info("Demoting user %s from admin to coach", user.id)
            role = UserRole.COACH.value
            status_fallback = SubscriptionStatus.UNPAID.value

        values = {
            "role": func.coalesce(_param(role, "role"), users.c.role),
            "subscription_status": func.coalesce(
                users.c.subscription_status, _param(status_fallback, "subscription_status")
            ),
            "first_name": _fill_if_empty("first_name", claims.first_name),
            "last_name": _fill_if_empty("last_name", claims.last_name),
            "updated_at": utcnow(),
        }
        for provider, column in PROVIDER_COLUMNS.items():
            own_id = claims.provider_id if provider == claims.provider else None
            values[column] = func.coalesce(_param(own_id, column), users.c[column])
        legacy_id = claims.provider_id if claims.provider in LEGACY_PROVIDERS else None
        values[LEGACY_COLUMN] = _fill_if_empty(LEGACY_COLUMN, legacy_id)

        session.connection().execute(update(users).where(users.c.id == user.id).values(**values))
        session.commit()
        session.refresh(user)
        return user
