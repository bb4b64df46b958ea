"""
Staged edit session.

Collects structural changes to permission sets, profiles and direct grants,
folds repeated changes to the same target into their net effect, and applies
the result through the grant store in one transaction.

States:

    clean --stage--> editing --commit--> committing --ok--> clean
                        ^                     |
                        +----- failed <-------+ (rolled back, pending kept)

Staging never touches the database. Validation that needs stored state
(hierarchy rules, existence) happens at commit time in the grant store.
"""
import enum
from typing import Any, Dict, List, Optional, Set, Tuple
from pydantic import BaseModel, Field

from app.core.exceptions import InvalidTransition, CommitFailed
from app.features.permission_sets import hierarchy
from app.features.permission_sets.schemas import (
    TableFlags,
    TableFlagsUpdate,
    FieldFlagsUpdate,
)
from app.utils import get_logger


log = get_logger(__name__)


class SessionState(str, enum.Enum):
    CLEAN = "clean"
    EDITING = "editing"
    COMMITTING = "committing"
    FAILED = "failed"


class OpKind(str, enum.Enum):
    ADD = "add"
    REMOVE = "remove"
    UPDATE = "update"


class TargetKind(str, enum.Enum):
    TABLE = "table"
    FIELD = "field"
    PROFILE_PERMISSION_SET = "profile_permission_set"
    USER_PERMISSION_SET = "user_permission_set"


# Commit order: grant changes before assignment changes
COMMIT_ORDER = (
    TargetKind.TABLE,
    TargetKind.FIELD,
    TargetKind.PROFILE_PERMISSION_SET,
    TargetKind.USER_PERMISSION_SET,
)

EDGE_TARGETS = (TargetKind.PROFILE_PERMISSION_SET, TargetKind.USER_PERMISSION_SET)


class PendingOp(BaseModel):
    """
    One pending change.

    key identifies the target:
        table                   (permission_set_id, table_name)
        field                   (permission_set_id, table_name, field_name)
        profile_permission_set  (profile_id, permission_set_id)
        user_permission_set     (user_id, permission_set_id), direct grants only
    """
    kind: OpKind
    target: TargetKind
    key: Tuple[str, ...]
    payload: Dict[str, Any] = Field(default_factory=dict)

    def describe(self) -> str:
        return f"{self.kind.value} {self.target.value} {'/'.join(self.key)}"


class CommitReport(BaseModel):
    """What a successful commit did."""
    applied: List[str] = Field(default_factory=list)
    unchanged: List[str] = Field(default_factory=list)
    fields_removed: int = 0
    table_counts: Dict[str, int] = Field(default_factory=dict)
    users_synced: int = 0


class StagedEditSession:

    def __init__(self):
        self.state = SessionState.CLEAN
        self.last_error: Optional[CommitFailed] = None
        self._pending: Dict[Tuple[TargetKind, Tuple[str, ...]], PendingOp] = {}

    @property
    def pending(self) -> List[PendingOp]:
        """Pending ops in staging order, after coalescing."""
        return list(self._pending.values())

    def __len__(self) -> int:
        return len(self._pending)

    # ────────────────────────────────
    # Staging
    # ────────────────────────────────
    def attach_table(self, permission_set_id: str, table_name: str, flags: TableFlags) -> None:
        self._stage(PendingOp(
            kind=OpKind.ADD,
            target=TargetKind.TABLE,
            key=(permission_set_id, table_name),
            payload=flags.model_dump(),
        ))

    def detach_table(self, permission_set_id: str, table_name: str) -> None:
        self._stage(PendingOp(kind=OpKind.REMOVE, target=TargetKind.TABLE, key=(permission_set_id, table_name)))

    def update_table_flags(self, permission_set_id: str, table_name: str, update: TableFlagsUpdate) -> None:
        self._stage(PendingOp(
            kind=OpKind.UPDATE,
            target=TargetKind.TABLE,
            key=(permission_set_id, table_name),
            payload=update.model_dump(exclude_none=True),
        ))

    def update_field_flags(
        self,
        permission_set_id: str,
        table_name: str,
        field_name: str,
        update: FieldFlagsUpdate
    ) -> None:
        table_op = self._pending.get((TargetKind.TABLE, (permission_set_id, table_name)))
        if table_op is not None and table_op.kind == OpKind.REMOVE:
            raise InvalidTransition(
                f"Table '{table_name}' is staged for removal",
                {"permission_set_id": permission_set_id, "table": table_name, "field": field_name}
            )
        self._stage(PendingOp(
            kind=OpKind.UPDATE,
            target=TargetKind.FIELD,
            key=(permission_set_id, table_name, field_name),
            payload=update.model_dump(exclude_none=True),
        ))

    def assign_profile_permission_set(self, profile_id: str, permission_set_id: str) -> None:
        self._stage(PendingOp(
            kind=OpKind.ADD, target=TargetKind.PROFILE_PERMISSION_SET, key=(profile_id, permission_set_id)
        ))

    def unassign_profile_permission_set(self, profile_id: str, permission_set_id: str) -> None:
        self._stage(PendingOp(
            kind=OpKind.REMOVE, target=TargetKind.PROFILE_PERMISSION_SET, key=(profile_id, permission_set_id)
        ))

    def assign_user_permission_set(self, user_id: str, permission_set_id: str) -> None:
        self._stage(PendingOp(
            kind=OpKind.ADD, target=TargetKind.USER_PERMISSION_SET, key=(user_id, permission_set_id)
        ))

    def unassign_user_permission_set(self, user_id: str, permission_set_id: str) -> None:
        self._stage(PendingOp(
            kind=OpKind.REMOVE, target=TargetKind.USER_PERMISSION_SET, key=(user_id, permission_set_id)
        ))

    def cancel(self) -> int:
        """Discard every pending op. Returns how many were discarded."""
        self._require_not_committing()
        discarded = len(self._pending)
        self._pending.clear()
        self.state = SessionState.CLEAN
        self.last_error = None
        return discarded

    def _require_not_committing(self) -> None:
        if self.state == SessionState.COMMITTING:
            raise InvalidTransition("Edit session is committing")

    def _stage(self, op: PendingOp) -> None:
        self._require_not_committing()
        slot = (op.target, op.key)
        existing = self._pending.get(slot)
        merged = op if existing is None else self._coalesce(existing, op)

        if merged is None:
            del self._pending[slot]
        else:
            # Reassigning an existing slot keeps its original position
            self._pending[slot] = merged

        if op.target == TargetKind.TABLE and self._invalidates_fields(op):
            self._drop_field_ops(op.key)

        self.state = SessionState.EDITING if self._pending else SessionState.CLEAN

    @staticmethod
    def _coalesce(existing: PendingOp, op: PendingOp) -> Optional[PendingOp]:
        """Net effect of existing followed by op; None when they cancel out."""
        before, after = existing.kind, op.kind
        is_edge = op.target in EDGE_TARGETS

        if before == OpKind.ADD and after == OpKind.REMOVE:
            return None
        if before == OpKind.REMOVE and after == OpKind.ADD:
            if is_edge:
                return None
            # The table row survives; only its flags change
            return op.model_copy(update={"kind": OpKind.UPDATE})
        if before == after == OpKind.ADD:
            return existing if is_edge else op
        if before == after == OpKind.REMOVE:
            return existing
        if before in (OpKind.ADD, OpKind.UPDATE) and after == OpKind.UPDATE:
            return existing.model_copy(update={"payload": {**existing.payload, **op.payload}})
        if before == OpKind.UPDATE and after == OpKind.REMOVE:
            return op
        if before == OpKind.UPDATE and after == OpKind.ADD:
            return op
        raise InvalidTransition(
            f"Cannot {after.value} {op.target.value} {'/'.join(op.key)} after staging its removal",
            {"pending": existing.describe()}
        )

    @staticmethod
    def _invalidates_fields(op: PendingOp) -> bool:
        if op.kind in (OpKind.ADD, OpKind.REMOVE):
            return True
        return hierarchy.update_revokes_field_access(TableFlagsUpdate(**op.payload))

    def _drop_field_ops(self, table_key: Tuple[str, ...]) -> None:
        stale = [
            slot for slot, pending in self._pending.items()
            if pending.target == TargetKind.FIELD and pending.key[:2] == table_key
        ]
        for slot in stale:
            del self._pending[slot]
        if stale:
            log.debug("Dropped %d pending field edits under %s", len(stale), "/".join(table_key))

    # ────────────────────────────────
    # Commit
    # ────────────────────────────────
    async def commit(self, store, resolver) -> CommitReport:
        """
        Apply every pending op in one transaction and commit it.

        Args:
            store: GrantStore bound to the session to commit
            resolver: AssignmentResolver bound to the same session

        Raises:
            CommitFailed: an op failed; the transaction is rolled back and
                the pending ops are kept for a retry
        """
        self._require_not_committing()
        report = CommitReport()
        if not self._pending:
            self.state = SessionState.CLEAN
            return report

        db = store.db
        self.state = SessionState.COMMITTING
        ordered = sorted(self._pending.values(), key=lambda p: COMMIT_ORDER.index(p.target))
        touched_sets: Set[str] = set()
        touched_profiles: Set[str] = set()
        touched_users: Set[str] = set()
        step = "begin"

        try:
            for op in ordered:
                step = op.describe()
                changed = await self._apply(op, store, report)
                (report.applied if changed else report.unchanged).append(step)
                if op.target in (TargetKind.TABLE, TargetKind.FIELD):
                    touched_sets.add(op.key[0])
                elif op.target == TargetKind.PROFILE_PERMISSION_SET:
                    touched_profiles.add(op.key[0])
                else:
                    touched_users.add(op.key[0])

            for permission_set_id in sorted(touched_sets):
                step = f"recount permission_set {permission_set_id}"
                report.table_counts[permission_set_id] = await store.recount_tables(permission_set_id)
            for profile_id in sorted(touched_profiles):
                step = f"sync profile {profile_id}"
                report.users_synced += await resolver.sync_profile_members(profile_id)
            for user_id in sorted(touched_users):
                step = f"sync user {user_id}"
                await resolver.sync_user(user_id)
                report.users_synced += 1

            step = "commit"
            store.audit.record(
                "commit", "edit_session", None,
                applied=len(report.applied),
                unchanged=len(report.unchanged),
                fields_removed=report.fields_removed,
                users_synced=report.users_synced,
            )
            await db.commit()
        except Exception as e:
            await db.rollback()
            self.state = SessionState.FAILED
            self.last_error = CommitFailed(step, e)
            log.warning("Edit session commit rolled back at %s: %s", step, e)
            self.state = SessionState.EDITING
            raise self.last_error from e

        log.info("Edit session committed %d ops (%d unchanged)", len(report.applied), len(report.unchanged))
        self._pending.clear()
        self.last_error = None
        self.state = SessionState.CLEAN
        return report

    @staticmethod
    async def _apply(op: PendingOp, store, report: CommitReport) -> bool:
        if op.target == TargetKind.TABLE:
            permission_set_id, table_name = op.key
            if op.kind == OpKind.ADD:
                await store.attach_table(permission_set_id, table_name, TableFlags(**op.payload), recount=False)
                return True
            table_access = await store.get_table_access_by_name(permission_set_id, table_name)
            if op.kind == OpKind.REMOVE:
                detached = await store.detach_table(permission_set_id, table_access.id, recount=False)
                report.fields_removed += detached.fields_removed
            else:
                await store.update_table_flags(table_access.id, TableFlagsUpdate(**op.payload))
            return True

        if op.target == TargetKind.FIELD:
            field_access = await store.get_field_access_by_name(*op.key)
            await store.update_field_flags(field_access.id, FieldFlagsUpdate(**op.payload))
            return True

        if op.target == TargetKind.PROFILE_PERMISSION_SET:
            profile_id, permission_set_id = op.key
            if op.kind == OpKind.ADD:
                result = await store.assign_permission_set_to_profile(profile_id, permission_set_id)
            else:
                result = await store.unassign_permission_set_from_profile(profile_id, permission_set_id)
            return result.changed

        user_id, permission_set_id = op.key
        if op.kind == OpKind.ADD:
            result = await store.assign_permission_set_to_user(user_id, permission_set_id)
        else:
            result = await store.unassign_permission_set_from_user(user_id, permission_set_id)
        return result.changed
