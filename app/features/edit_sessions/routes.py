"""
Edit session API route.

The admin UI keeps its queue of edits client side and posts it in one
request; the server folds it into a staged edit session and commits it as
a single transaction.
"""
from typing import Annotated
from fastapi import APIRouter, Depends

from app.features.access.dependencies import get_resolver
from app.features.access.resolver import AssignmentResolver
from app.features.edit_sessions.schemas import CommitRequest, CommitResponse, StagedOpRequest
from app.features.edit_sessions.session import StagedEditSession
from app.features.permission_sets.dependencies import get_grant_store
from app.features.permission_sets.service import GrantStore
from app.features.users.dependencies import get_current_admin_user


router = APIRouter(dependencies=[Depends(get_current_admin_user)])


def stage_request(session: StagedEditSession, request: StagedOpRequest) -> None:
    op = request.op
    if op == "attach_table":
        session.attach_table(request.permission_set_id, request.table_name, request.attach_flags())
    elif op == "detach_table":
        session.detach_table(request.permission_set_id, request.table_name)
    elif op == "update_table_flags":
        session.update_table_flags(request.permission_set_id, request.table_name, request.table_flags)
    elif op == "update_field_flags":
        session.update_field_flags(
            request.permission_set_id, request.table_name, request.field_name, request.field_flags
        )
    elif op == "assign_profile_permission_set":
        session.assign_profile_permission_set(request.profile_id, request.permission_set_id)
    elif op == "unassign_profile_permission_set":
        session.unassign_profile_permission_set(request.profile_id, request.permission_set_id)
    elif op == "assign_user_permission_set":
        session.assign_user_permission_set(request.user_id, request.permission_set_id)
    else:
        session.unassign_user_permission_set(request.user_id, request.permission_set_id)


@router.post("/commit", response_model=CommitResponse)
async def commit_edits(
    request: CommitRequest,
    store: Annotated[GrantStore, Depends(get_grant_store)],
    resolver: Annotated[AssignmentResolver, Depends(get_resolver)]
):
    """
    Stage and commit a batch of edits.

    Repeated edits of one target collapse to their net effect first. If any
    edit fails nothing is applied and the error names the failing edit.
    """
    session = StagedEditSession()
    for op in request.ops:
        stage_request(session, op)
    staged = len(session)
    report = await session.commit(store, resolver)
    return CommitResponse(staged=staged, report=report)
