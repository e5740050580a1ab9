from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from prflow.database import get_sessionmaker
from prflow.middleware.auth import get_current_actor
from prflow.schemas.common import PaginatedResponse, build_pagination, page_offset
from prflow.schemas.purchase_request import (
    ApproveRequest,
    CommentCreate,
    CommentResponse,
    PurchaseRequestCreate,
    PurchaseRequestResponse,
    PurchaseRequestUpdate,
    RejectRequest,
    StageListResponse,
)
from prflow.services.approval_engine import (
    ApprovalEngine,
    DetailsUpdate,
    DraftItem,
    PurchaseRequestDraft,
)
from prflow.services.identity import Actor
from prflow.services.notification_service import get_notification_sink
from prflow.services.project_directory import SqlAlchemyProjectDirectory
from prflow.services.records import PurchaseRequestRecord
from prflow.services.request_store import SqlAlchemyRequestStore
from prflow.services.stage_policy import get_stage_policy

logger = structlog.get_logger()
router = APIRouter()
projects_router = APIRouter()


def get_engine(
    background_tasks: BackgroundTasks,
    sessionmaker: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
) -> ApprovalEngine:
    """Per-request engine; notifications run after the response is sent."""
    return ApprovalEngine(
        store=SqlAlchemyRequestStore(sessionmaker),
        policy=get_stage_policy(),
        projects=SqlAlchemyProjectDirectory(sessionmaker),
        notifier=get_notification_sink(),
        dispatch=background_tasks.add_task,
    )


def _to_response(
    engine: ApprovalEngine, pr: PurchaseRequestRecord, actor: Actor
) -> PurchaseRequestResponse:
    response = PurchaseRequestResponse.model_validate(pr)
    return response.model_copy(update={"can_act": engine.can_act(pr, actor)})


async def _list(
    engine: ApprovalEngine,
    actor: Actor,
    view: str,
    project_id: Optional[str],
    page: int,
    limit: int,
) -> PaginatedResponse[PurchaseRequestResponse]:
    records, total = await engine.list_requests(
        actor, view=view, project_id=project_id, limit=limit, offset=page_offset(page, limit)
    )
    logger.info("pr_list_result", view=view, count=len(records), total=total)
    return PaginatedResponse(
        data=[_to_response(engine, pr, actor) for pr in records],
        pagination=build_pagination(page, limit, total),
    )


# ---------- LIST / GET ----------


@router.get("", response_model=PaginatedResponse[PurchaseRequestResponse])
async def list_purchase_requests(
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(20, ge=1, le=100),
    view: str = Query("all", alias="filter"),
    project_id: Optional[str] = Query(None),
    actor: Actor = Depends(get_current_actor),
    engine: ApprovalEngine = Depends(get_engine),
):
    return await _list(engine, actor, view, project_id, page, limit)


@projects_router.get(
    "/{project_id}/purchase-requests",
    response_model=PaginatedResponse[PurchaseRequestResponse],
)
async def list_project_purchase_requests(
    project_id: str,
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(20, ge=1, le=100),
    view: str = Query("all", alias="filter"),
    actor: Actor = Depends(get_current_actor),
    engine: ApprovalEngine = Depends(get_engine),
):
    return await _list(engine, actor, view, project_id, page, limit)


@router.get("/{pr_id}", response_model=PurchaseRequestResponse)
async def get_purchase_request(
    pr_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: ApprovalEngine = Depends(get_engine),
):
    pr = await engine.get(pr_id, actor)
    return _to_response(engine, pr, actor)


@router.get("/{pr_id}/stages", response_model=StageListResponse)
async def get_purchase_request_stages(
    pr_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: ApprovalEngine = Depends(get_engine),
):
    pr = await engine.get(pr_id, actor)
    view = engine.stage_view(pr, actor)
    return StageListResponse(
        stages=view.stages,
        current_stage=pr.current_stage,
        current_index=view.current_index,
        can_act=view.can_act,
    )


# ---------- CREATE / UPDATE ----------


@router.post("", response_model=PurchaseRequestResponse, status_code=status.HTTP_201_CREATED)
async def create_purchase_request(
    body: PurchaseRequestCreate,
    actor: Actor = Depends(get_current_actor),
    engine: ApprovalEngine = Depends(get_engine),
):
    draft = PurchaseRequestDraft(
        project_id=body.project_id,
        title=body.title,
        description=body.description,
        required_by=body.required_by,
        priority=body.priority,
        pr_type=body.pr_type,
        items=[
            DraftItem(
                material_id=item.material_id,
                quantity=item.quantity,
                unit=item.unit,
                estimated_unit_price=item.estimated_unit_price,
                vendor=item.vendor,
                notes=item.notes,
            )
            for item in body.items
        ],
    )
    pr = await engine.submit(draft, actor)
    return _to_response(engine, pr, actor)


@router.patch("/{pr_id}", response_model=PurchaseRequestResponse)
async def update_purchase_request(
    pr_id: str,
    body: PurchaseRequestUpdate,
    actor: Actor = Depends(get_current_actor),
    engine: ApprovalEngine = Depends(get_engine),
):
    # Only fields present in the body change; an explicit null clears it
    changes = DetailsUpdate(**{name: getattr(body, name) for name in body.model_fields_set})
    pr = await engine.update_details(pr_id, actor, changes)
    return _to_response(engine, pr, actor)


# ---------- APPROVE / REJECT ----------


@router.post("/{pr_id}/approve", response_model=PurchaseRequestResponse)
async def approve_purchase_request(
    pr_id: str,
    body: ApproveRequest,
    actor: Actor = Depends(get_current_actor),
    engine: ApprovalEngine = Depends(get_engine),
):
    pr = await engine.approve(pr_id, actor, body.stage, body.comment)
    return _to_response(engine, pr, actor)


@router.post("/{pr_id}/reject", response_model=PurchaseRequestResponse)
async def reject_purchase_request(
    pr_id: str,
    body: RejectRequest,
    actor: Actor = Depends(get_current_actor),
    engine: ApprovalEngine = Depends(get_engine),
):
    pr = await engine.reject(pr_id, actor, body.stage, body.reason)
    return _to_response(engine, pr, actor)


# ---------- COMMENTS ----------


@router.post(
    "/{pr_id}/comments",
    response_model=CommentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_purchase_request_comment(
    pr_id: str,
    body: CommentCreate,
    actor: Actor = Depends(get_current_actor),
    engine: ApprovalEngine = Depends(get_engine),
):
    comment = await engine.add_comment(pr_id, actor, body.comment)
    return CommentResponse.model_validate(comment)


@router.get("/{pr_id}/comments", response_model=list[CommentResponse])
async def list_purchase_request_comments(
    pr_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: ApprovalEngine = Depends(get_engine),
):
    comments = await engine.list_comments(pr_id, actor)
    return [CommentResponse.model_validate(c) for c in comments]
