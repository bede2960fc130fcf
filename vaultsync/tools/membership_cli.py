"""
Membership admin tool for vaultsync.

This tool edits container memberships directly in the configured store:
- grant: Upsert an ACTIVE membership row
- revoke: Mark a membership REVOKED, keeping the row
- transfer: Move ownership of a container to another user
- list: Print a container's membership rows
- backfill: Create missing OWNER rows and repair malformed rows for a user

Usage:
    vaultsync-admin grant --container-id c1 --user-id u2
    VAULTSYNC_ADMIN_CONFIRM=I_UNDERSTAND vaultsync-admin grant --execute \\
        --container-id c1 --user-id u2 --role DELEGATE --permissions View,Edit
    vaultsync-admin list --container-id c1 --format json
    vaultsync-admin backfill --uid u1

Invariants:
    - Every write command is a dry run unless --execute is given
    - --execute is refused unless VAULTSYNC_ADMIN_CONFIRM=I_UNDERSTAND
    - grant never changes the container's owner of record; use transfer

How to change safely:
    - Add new commands, don't change the meaning of existing flags
    - Keep the dry-run output a faithful preview of the write
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, TextIO

from ..access.membership_store import MembershipStore, membership_path
from ..audit.log import AuditLog
from ..config import AuditConfig, StoreConfig
from ..errors import NotFoundError, ValidationError, VaultSyncError
from ..model.entities import CONTAINERS, MEMBERSHIPS, container_path, now_ms
from ..model.membership import Membership, MembershipRole, MembershipStatus
from ..model.permissions import Permission, PermissionSet
from ..mutate.coordinator import MutationCoordinator
from ..store.base import DocumentStore, WriteOp, create_document_store

logger = logging.getLogger(__name__)

CONFIRM_ENV = "VAULTSYNC_ADMIN_CONFIRM"
CONFIRM_VALUE = "I_UNDERSTAND"

# Dry-run output shows at most this many patches and creates each
PREVIEW_LIMIT = 25


def parse_permissions(value: str | None) -> PermissionSet | None:
    """Parse a comma-separated permission list such as ``View,Edit``.

    Raises:
        ValidationError: If a name is not a known permission
    """
    if value is None:
        return None
    names = [part.strip() for part in value.split(",") if part.strip()]
    try:
        granted = {Permission.parse(name) for name in names}
    except ValueError as e:
        raise ValidationError(str(e), "permissions")
    return PermissionSet(**{p.name.lower(): True for p in granted})


def _normalize_status(value: Any) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip().upper()


def repair_membership(
    row: dict[str, Any],
    container_id: str,
    user_id: str,
    is_owned: bool,
    now: int,
) -> dict[str, Any]:
    """Fields to merge into a stored membership row to make it well-formed.

    Missing status becomes ACTIVE and other statuses are upper-cased. A
    missing or unknown role is OWNER when the user owns the container of
    record, DELEGATE otherwise. DELEGATE rows without a permission map
    become View-only.
    """
    patch: dict[str, Any] = {}
    if row.get("user_id") != user_id:
        patch["user_id"] = user_id
    if row.get("container_id") != container_id:
        patch["container_id"] = container_id

    status = _normalize_status(row.get("status"))
    if status is None:
        patch["status"] = MembershipStatus.ACTIVE.value
    elif status != row.get("status"):
        patch["status"] = status

    raw_role = row.get("role")
    role = raw_role.strip().upper() if isinstance(raw_role, str) else None
    if role not in (MembershipRole.OWNER.value, MembershipRole.DELEGATE.value):
        role = MembershipRole.OWNER.value if is_owned else MembershipRole.DELEGATE.value
        patch["role"] = role

    if role == MembershipRole.OWNER.value:
        if row.get("permissions") is not None:
            patch["permissions"] = None
    elif not isinstance(row.get("permissions"), dict):
        patch["permissions"] = PermissionSet.view_only().to_dict()

    assigned_at = row.get("assigned_at")
    if not isinstance(assigned_at, int) or isinstance(assigned_at, bool):
        patch["assigned_at"] = now
    if "revoked_at" not in row:
        patch["revoked_at"] = None
    return patch


@dataclass
class BackfillPlan:
    """Writes a membership backfill makes for one user.

    Attributes:
        container_ids: Containers inspected
        patches: Membership path -> fields to merge
        creates: Membership path -> OWNER row to create
    """

    container_ids: list[str] = field(default_factory=list)
    patches: dict[str, dict[str, Any]] = field(default_factory=dict)
    creates: dict[str, dict[str, Any]] = field(default_factory=dict)


class MembershipCLI:
    """Membership commands over a connected document store.

    Example:
        >>> cli = MembershipCLI(store, execute=False)
        >>> await cli.grant("c1", "u2")  # prints the row it would write
    """

    def __init__(
        self,
        store: DocumentStore,
        execute: bool = False,
        out: TextIO | None = None,
        clock: Callable[[], int] | None = None,
        audit_config: AuditConfig | None = None,
    ) -> None:
        self.store = store
        self.execute = execute
        self.out = out or sys.stdout
        self._clock = clock or now_ms
        self.memberships = MembershipStore(store)
        self.audit = AuditLog(store, audit_config, clock=self._clock)
        self.coordinator = MutationCoordinator(
            store, self.audit, memberships=self.memberships, clock=self._clock
        )

    def _print(self, message: str = "") -> None:
        print(message, file=self.out)

    def _header(self, command: str, **fields: Any) -> None:
        self._print(f"[vaultsync-admin] {command}")
        self._print(f"mode: {'EXECUTE' if self.execute else 'DRY-RUN'}")
        for key, value in fields.items():
            self._print(f"{key}: {value if value is not None else '(none)'}")

    async def _require_container(self, container_id: str) -> dict[str, Any]:
        doc = await self.store.get(container_path(container_id))
        if doc is None:
            raise NotFoundError(f"Container not found: {container_id}", container_path(container_id))
        return doc

    async def grant(
        self,
        container_id: str,
        user_id: str,
        role: str = "DELEGATE",
        permissions: PermissionSet | None = None,
    ) -> Membership:
        """Upsert an ACTIVE membership.

        DELEGATE rows default to View-only; OWNER rows carry no permissions.
        """
        await self._require_container(container_id)
        now = self._clock()
        if role.upper() == MembershipRole.OWNER.value:
            membership = Membership.owner(container_id, user_id, now)
        else:
            membership = Membership.delegate(
                container_id, user_id, permissions or PermissionSet.view_only(), now
            )

        path = membership_path(container_id, user_id)
        self._header("grant", container_id=container_id, user_id=user_id, role=membership.role.value)
        if not self.execute:
            self._print(f"would upsert: {path}")
            self._print(json.dumps(membership.to_dict(), indent=2, sort_keys=True))
            return membership

        await self.memberships.save(membership)
        logger.info(
            "Admin granted membership",
            extra={"container_id": container_id, "user_id": user_id, "role": membership.role.value},
        )
        self._print(f"upserted: {path}")
        return membership

    async def revoke(self, container_id: str, user_id: str) -> Membership:
        """Mark a membership REVOKED.

        Raises:
            NotFoundError: If the user has no membership row
        """
        path = membership_path(container_id, user_id)
        self._header("revoke", container_id=container_id, user_id=user_id)
        doc = await self.store.get(path)
        if doc is None:
            raise NotFoundError(f"Membership not found: {path}", path)
        if not self.execute:
            self._print(f"would revoke: {path}")
            return Membership.from_dict({"container_id": container_id, **doc})

        revoked = await self.memberships.revoke(container_id, user_id, self._clock())
        logger.info("Admin revoked membership", extra={"container_id": container_id, "user_id": user_id})
        self._print(f"revoked: {path}")
        return revoked

    async def transfer(self, container_id: str, from_user_id: str, to_user_id: str) -> bool:
        """Transfer ownership; returns whether a write happened."""
        self._header(
            "transfer", container_id=container_id, from_user_id=from_user_id, to_user_id=to_user_id
        )
        doc = await self._require_container(container_id)
        if not self.execute:
            self._print(f"current owner_id: {doc.get('owner_id')}")
            self._print(f"would demote {from_user_id} to DELEGATE and promote {to_user_id} to OWNER")
            return False

        await self.coordinator.transfer_ownership(container_id, from_user_id, to_user_id)
        await self.coordinator.drain()
        self._print(f"transferred: {container_path(container_id)} -> {to_user_id}")
        return True

    async def list_memberships(self, container_id: str, output_format: str = "text") -> list[Membership]:
        """Print a container's memberships, sorted by user id."""
        rows = sorted(await self.memberships.fetch(container_id), key=lambda m: m.user_id)
        if output_format == "json":
            self._print(json.dumps([m.to_dict() for m in rows], indent=2, sort_keys=True))
            return rows
        if not rows:
            self._print(f"No memberships for {container_id}")
            return rows
        for m in rows:
            perms = ",".join(p.value for p in m.effective_permissions().granted())
            if m.role is MembershipRole.OWNER:
                perms = "*"
            self._print(f"{m.user_id}\t{m.role.value}\t{m.status.value}\t{perms}")
        return rows

    async def plan_backfill(self, user_id: str) -> BackfillPlan:
        """Work out the membership repairs for one user without writing."""
        docs = await self.store.query_group(MEMBERSHIPS, where={"user_id": user_id})
        owned = await self.store.query(CONTAINERS, where={"owner_id": user_id})
        container_ids = sorted(
            {str(d["container_id"]) for d in docs if d.get("container_id")}
            | {str(d["id"]) for d in owned}
        )

        plan = BackfillPlan(container_ids=container_ids)
        for cid in container_ids:
            container = await self.store.get(container_path(cid)) or {}
            is_owned = container.get("owner_id") == user_id
            path = membership_path(cid, user_id)
            row = await self.store.get(path)
            if row is None:
                if is_owned:
                    plan.creates[path] = Membership.owner(cid, user_id, self._clock()).to_dict()
                continue
            patch = repair_membership(row, cid, user_id, is_owned, self._clock())
            if patch:
                plan.patches[path] = patch
        return plan

    async def backfill(self, user_id: str) -> BackfillPlan:
        """Create missing OWNER rows and repair malformed rows for a user.

        Containers are found through the user's membership rows and through
        the owner of record. A malformed row is only found when it still
        carries user_id and container_id, or sits under a container the
        user owns of record.

        Raises:
            ValidationError: If user_id is empty
        """
        user_id = user_id.strip()
        if not user_id:
            raise ValidationError("uid is required", "uid")
        self._header("backfill", uid=user_id)
        plan = await self.plan_backfill(user_id)
        self._print(f"containers to inspect: {len(plan.container_ids)}")
        self._print(f"docs needing patch: {len(plan.patches)}")
        self._print(f"missing owner memberships to create: {len(plan.creates)}")

        if not self.execute:
            for path, patch in list(plan.patches.items())[:PREVIEW_LIMIT]:
                self._print(f"would patch: {path}")
                self._print(json.dumps(patch, indent=2, sort_keys=True))
            for path, data in list(plan.creates.items())[:PREVIEW_LIMIT]:
                self._print(f"would create: {path}")
                self._print(json.dumps(data, indent=2, sort_keys=True))
            if len(plan.patches) > PREVIEW_LIMIT or len(plan.creates) > PREVIEW_LIMIT:
                self._print(f"(showing first {PREVIEW_LIMIT} patches and first {PREVIEW_LIMIT} creates)")
            self._print("dry-run complete")
            return plan

        ops = [WriteOp.set(path, data, merge=True) for path, data in plan.creates.items()]
        ops += [WriteOp.set(path, patch, merge=True) for path, patch in plan.patches.items()]
        if ops:
            await self.store.batch(ops)
        logger.info(
            "Admin backfilled memberships",
            extra={"user_id": user_id, "patched": len(plan.patches), "created": len(plan.creates)},
        )
        self._print("execute complete")
        return plan


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vaultsync-admin", description="vaultsync membership administration"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    grant_parser = subparsers.add_parser("grant", help="Grant a membership")
    grant_parser.add_argument("--container-id", required=True)
    grant_parser.add_argument("--user-id", required=True)
    grant_parser.add_argument("--role", choices=["OWNER", "DELEGATE"], default="DELEGATE", type=str.upper)
    grant_parser.add_argument("--permissions", help="Comma-separated, e.g. View,Edit (DELEGATE only)")
    grant_parser.add_argument("--execute", action="store_true", help="Write instead of dry-run")

    revoke_parser = subparsers.add_parser("revoke", help="Revoke a membership")
    revoke_parser.add_argument("--container-id", required=True)
    revoke_parser.add_argument("--user-id", required=True)
    revoke_parser.add_argument("--execute", action="store_true", help="Write instead of dry-run")

    transfer_parser = subparsers.add_parser("transfer", help="Transfer container ownership")
    transfer_parser.add_argument("--container-id", required=True)
    transfer_parser.add_argument("--from-user", required=True)
    transfer_parser.add_argument("--to-user", required=True)
    transfer_parser.add_argument("--execute", action="store_true", help="Write instead of dry-run")

    list_parser = subparsers.add_parser("list", help="List memberships of a container")
    list_parser.add_argument("--container-id", required=True)
    list_parser.add_argument("--format", choices=["text", "json"], default="text")

    backfill_parser = subparsers.add_parser("backfill", help="Backfill and repair a user's memberships")
    backfill_parser.add_argument("--uid", required=True)
    backfill_parser.add_argument("--execute", action="store_true", help="Write instead of dry-run")

    return parser


async def run(args: argparse.Namespace, store: DocumentStore, out: TextIO | None = None) -> None:
    """Dispatch a parsed command against a connected store."""
    cli = MembershipCLI(store, execute=getattr(args, "execute", False), out=out)
    if args.command == "grant":
        await cli.grant(args.container_id, args.user_id, args.role, parse_permissions(args.permissions))
    elif args.command == "revoke":
        await cli.revoke(args.container_id, args.user_id)
    elif args.command == "transfer":
        await cli.transfer(args.container_id, args.from_user, args.to_user)
    elif args.command == "list":
        await cli.list_memberships(args.container_id, args.format)
    elif args.command == "backfill":
        await cli.backfill(args.uid)


async def _run_with_store(args: argparse.Namespace, config: StoreConfig) -> None:
    store = create_document_store(config)
    await store.connect()
    try:
        await run(args, store)
    finally:
        await store.close()


def main(argv: list[str] | None = None) -> int:
    """CLI entry point for membership administration."""
    args = build_parser().parse_args(argv)

    if getattr(args, "execute", False) and os.environ.get(CONFIRM_ENV) != CONFIRM_VALUE:
        print(f"Refusing to execute without {CONFIRM_ENV}={CONFIRM_VALUE}", file=sys.stderr)
        return 1

    try:
        config = StoreConfig.from_env()
        asyncio.run(_run_with_store(args, config))
    except (VaultSyncError, ValueError) as e:
        print(f"[vaultsync-admin] ERROR: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
