"""Tenant scoping applied to every repository query."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, TypeVar

from sqlmodel import col

from overseer.scheduling.errors import TenantViolation

logger = logging.getLogger(__name__)

StatementT = TypeVar("StatementT")
RowT = TypeVar("RowT")


@dataclass(frozen=True, slots=True)
class TenantContext:
    """Who is asking: the owning user and whether they may see every tenant."""

    owner_user_id: int
    can_view_all: bool = False

    @classmethod
    def system(cls, owner_user_id: int = 0) -> TenantContext:
        """Elevated context used by the engine and runner."""

        return cls(owner_user_id=owner_user_id, can_view_all=True)


class TenantGuard:
    """Single place that rewrites queries and checks explicit owner ids.

    Repositories route every SELECT/UPDATE/DELETE through `scope()`, so a new
    query inherits the owner filter without repeating it at the call site.
    """

    def __init__(self, context: TenantContext) -> None:
        self.context = context

    @property
    def owner_user_id(self) -> int:
        return self.context.owner_user_id

    @property
    def can_view_all(self) -> bool:
        return self.context.can_view_all

    def scope(self, statement: StatementT, model: Any) -> StatementT:
        """Add `owner_user_id = :owner` unless the caller may view all tenants."""

        if self.context.can_view_all:
            return statement
        return statement.where(  # type: ignore[attr-defined]
            col(model.owner_user_id) == self.context.owner_user_id,
        )

    def authorize_owner(self, owner_user_id: int | None) -> int:
        """Resolve the owner for a write and reject cross-tenant requests."""

        if owner_user_id is None:
            return self.context.owner_user_id
        if owner_user_id != self.context.owner_user_id and not self.context.can_view_all:
            logger.warning(
                "Tenant violation: user %s attempted to act on behalf of user %s",
                self.context.owner_user_id,
                owner_user_id,
            )
            raise TenantViolation(
                f"User {self.context.owner_user_id} cannot access data of user {owner_user_id}.",
            )
        return owner_user_id

    def check_row(self, row: RowT, *, kind: str, ident: object) -> RowT:
        """Reject a row loaded by id that belongs to another tenant.

        By-id lookups load the row without the owner filter so that a foreign
        row is reported as a violation instead of looking like a missing one.
        """

        owner_user_id = row.owner_user_id  # type: ignore[attr-defined]
        if owner_user_id != self.context.owner_user_id and not self.context.can_view_all:
            logger.warning(
                "Tenant violation: user %s attempted to access %s %s owned by user %s",
                self.context.owner_user_id,
                kind,
                ident,
                owner_user_id,
            )
            raise TenantViolation(
                f"User {self.context.owner_user_id} cannot access {kind} {ident}.",
            )
        return row
