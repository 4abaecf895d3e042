import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from errors import PermissionDenied
from models import (
    Actor,
    ApprovalEmail,
    ApproveRequest,
    BulkUpdateRequest,
    ConfirmRequest,
    CounterResetRequest,
    CounterState,
    Department,
    DepartmentUpdate,
    DirectIssueRequest,
    DirectIssueResponse,
    DirectoryUser,
    DriverHandoverEmail,
    FinalReceiptRequest,
    HandoverRequest,
    IssuanceEmail,
    IssuePreviewRequest,
    IssueRequest,
    IssueResponse,
    LevelUpdateResult,
    MaterialMapping,
    MaterialMappingCreate,
    MaterialMappingUpdate,
    MaterialUsageCreate,
    Product,
    ProductCreate,
    PushRequest,
    ReceiptConfirmationEmail,
    RejectionEmail,
    RejectRequest,
    Requisition,
    RequisitionAmend,
    RequisitionCreate,
    RecordedUsage,
    RequisitionStatus,
    ShortageLine,
    StockAdjustRequest,
    StockChange,
    StockMovement,
    TaskAssignmentEmail,
    TaskCompletionEmail,
    UsageAlert,
    UsageAlertCreate,
    UsageAnalysis,
    UsageMetrics,
    UsagePage,
    UserUpdate,
    WhatsAppRequest,
)
from services import RequisitionService, create_product
from store import require_id
from usage import PAGE_SIZE, UsageTracker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")
usage_router = APIRouter(prefix="/api/usage")
notifications_router = APIRouter()


# Dependencies
def get_actor(
    x_user_name: str = Header(default=""),
    x_user_role: Optional[str] = Header(default=None),
) -> Actor:
    """Caller identity as forwarded by the portal"""
    return Actor(name=x_user_name.strip(), role=x_user_role)


def get_service(request: Request) -> RequisitionService:
    return request.app.state.requisitions


def get_usage(request: Request) -> UsageTracker:
    return request.app.state.usage


def require_admin(request: Request, actor: Actor = Depends(get_actor)) -> Actor:
    admin_role = request.app.state.config.ADMIN_ROLE
    if (actor.role or "").strip().lower() != admin_role.lower():
        raise PermissionDenied(f"Only the {admin_role} can do this")
    return actor


# ==================== REQUISITIONS ====================

@router.post("/requisitions", response_model=Requisition, response_model_exclude_none=True, status_code=201)
def submit_requisition(payload: RequisitionCreate, service: RequisitionService = Depends(get_service)):
    """Create a Pending requisition with the next dispatch number"""
    return service.submit(payload)


@router.get("/requisitions", response_model=List[Requisition], response_model_exclude_none=True)
def list_requisitions(
    status: Optional[RequisitionStatus] = None,
    requestedBy: Optional[str] = None,
    service: RequisitionService = Depends(get_service),
):
    return service.list(status=status, requested_by=requestedBy)


@router.get("/requisitions/{requisition_id}", response_model=Requisition, response_model_exclude_none=True)
def get_requisition(requisition_id: str, service: RequisitionService = Depends(get_service)):
    return service.get(requisition_id)


@router.put("/requisitions/{requisition_id}", response_model=Requisition, response_model_exclude_none=True)
def amend_requisition(
    requisition_id: str,
    payload: RequisitionAmend,
    actor: Actor = Depends(get_actor),
    service: RequisitionService = Depends(get_service),
):
    """Edit a requisition that nobody has acted on yet"""
    return service.amend(requisition_id, actor, payload)


@router.post("/requisitions/{requisition_id}/confirm", response_model=Requisition, response_model_exclude_none=True)
def confirm_requisition(
    requisition_id: str,
    payload: Optional[ConfirmRequest] = None,
    actor: Actor = Depends(get_actor),
    service: RequisitionService = Depends(get_service),
):
    return service.confirm(requisition_id, actor, payload or ConfirmRequest())


@router.post("/requisitions/{requisition_id}/reject", response_model=Requisition, response_model_exclude_none=True)
def reject_requisition(
    requisition_id: str,
    payload: RejectRequest,
    actor: Actor = Depends(get_actor),
    service: RequisitionService = Depends(get_service),
):
    return service.reject(requisition_id, actor, payload)


@router.post("/requisitions/{requisition_id}/approve", response_model=Requisition, response_model_exclude_none=True)
def approve_requisition(
    requisition_id: str,
    payload: Optional[ApproveRequest] = None,
    actor: Actor = Depends(get_actor),
    service: RequisitionService = Depends(get_service),
):
    return service.approve(requisition_id, actor, payload or ApproveRequest())


@router.post("/requisitions/{requisition_id}/issue-preview", response_model=List[ShortageLine])
def preview_issue(
    requisition_id: str,
    payload: Optional[IssuePreviewRequest] = None,
    service: RequisitionService = Depends(get_service),
):
    """
    Dry run of issuance

    Returns stock on hand and the shortage each line would cause, so the
    caller can ask "proceed anyway?" before issuing.
    """
    return service.preview_issue(requisition_id, payload.issuedProducts if payload else None)


@router.post("/requisitions/{requisition_id}/issue", response_model=IssueResponse, response_model_exclude_none=True)
def issue_requisition(
    requisition_id: str,
    payload: Optional[IssueRequest] = None,
    actor: Actor = Depends(get_actor),
    service: RequisitionService = Depends(get_service),
):
    """
    Issue stock against an approved requisition

    Rules:
    1. Stock is decremented in full even when it goes negative
    2. Each shortfall is appended to the issuance notes and returned
    3. isDriver=true moves to Issued (handover pending), otherwise Delivered
    """
    requisition, shortages = service.issue(requisition_id, actor, payload or IssueRequest())
    return IssueResponse(
        requisition=requisition,
        shortages=[ShortageLine(**shortage.to_dict()) for shortage in shortages],
    )


@router.post("/requisitions/{requisition_id}/handover", response_model=Requisition, response_model_exclude_none=True)
def confirm_handover(
    requisition_id: str,
    payload: HandoverRequest,
    service: RequisitionService = Depends(get_service),
):
    return service.confirm_handover(requisition_id, payload)


@router.post("/requisitions/{requisition_id}/receipt", response_model=Requisition, response_model_exclude_none=True)
def confirm_final_receipt(
    requisition_id: str,
    payload: FinalReceiptRequest,
    service: RequisitionService = Depends(get_service),
):
    return service.confirm_final_receipt(requisition_id, payload)


# ==================== PRODUCTS AND STOCK ====================

@router.post("/products", response_model=Product, status_code=201)
def create_product_endpoint(payload: ProductCreate, request: Request):
    """Register a product; quantity is booked as an opening balance receipt"""
    return create_product(request.app.state.ledger, payload)


@router.get("/products", response_model=List[Product])
def list_products(request: Request):
    return request.app.state.ledger.products.list()


@router.get("/products/{product_id}", response_model=Product)
def get_product(product_id: str, request: Request):
    require_id(product_id, "Product ID")
    return request.app.state.ledger.products.get(product_id)


@router.get("/products/{product_id}/movements", response_model=List[StockMovement])
def get_product_movements(product_id: str, request: Request):
    require_id(product_id, "Product ID")
    return request.app.state.ledger.movements(product_id)


@router.post("/stock/adjust", response_model=StockChange)
def adjust_stock(payload: StockAdjustRequest, request: Request):
    return request.app.state.ledger.apply_delta(
        payload.productId, payload.delta, payload.reason, payload.reference
    )


@router.post("/stock/bulk-update", response_model=List[LevelUpdateResult])
def bulk_update_stock(payload: BulkUpdateRequest, request: Request):
    return request.app.state.ledger.set_levels(payload.rows)


@router.post("/stock/direct-issue", response_model=DirectIssueResponse, status_code=201)
def direct_issue(payload: DirectIssueRequest, request: Request):
    record, change = request.app.state.ledger.direct_issue(
        payload.productId, payload.quantity, payload.department, payload.issuedTo, payload.signature
    )
    return DirectIssueResponse(record=record, change=change)


# ==================== COUNTER AND DIRECTORY ====================

@router.get("/counters/requisition", response_model=CounterState)
def get_requisition_counter(request: Request):
    return request.app.state.numbers.current()


@router.put("/counters/requisition", response_model=CounterState)
def reset_requisition_counter(
    request: Request,
    payload: Optional[CounterResetRequest] = None,
    actor: Actor = Depends(require_admin),
):
    payload = payload or CounterResetRequest()
    logger.warning(f"Requisition counter reset to {payload.value} by {actor.name or 'unknown'}")
    return request.app.state.numbers.reset(payload.value)


@router.put("/departments/{name}", response_model=Department)
def update_department(name: str, payload: DepartmentUpdate, request: Request):
    return request.app.state.directory.upsert_department(name, payload.head)


@router.put("/users/{user_id}", response_model=DirectoryUser)
def update_user(user_id: str, payload: UserUpdate, request: Request):
    return request.app.state.directory.upsert_user(user_id, payload.name, payload.email, payload.role)


# ==================== MATERIAL USAGE ====================

@usage_router.post("/mappings", response_model=MaterialMapping, response_model_exclude_none=True, status_code=201)
def create_mapping(
    payload: MaterialMappingCreate,
    actor: Actor = Depends(get_actor),
    usage: UsageTracker = Depends(get_usage),
):
    """Record what one lab test is expected to consume"""
    return usage.add_mapping(payload, created_by=actor.name)


@usage_router.get("/mappings", response_model=List[MaterialMapping], response_model_exclude_none=True)
def list_mappings(usage: UsageTracker = Depends(get_usage)):
    return usage.list_mappings()


@usage_router.get("/mappings/test/{test_id}", response_model=MaterialMapping, response_model_exclude_none=True)
def get_mapping_for_test(test_id: str, usage: UsageTracker = Depends(get_usage)):
    return usage.mapping_for_test(test_id)


@usage_router.put("/mappings/{mapping_id}", response_model=MaterialMapping, response_model_exclude_none=True)
def update_mapping(mapping_id: str, payload: MaterialMappingUpdate, usage: UsageTracker = Depends(get_usage)):
    return usage.update_mapping(mapping_id, payload)


@usage_router.delete("/mappings/{mapping_id}", status_code=204)
def delete_mapping(mapping_id: str, usage: UsageTracker = Depends(get_usage)):
    usage.delete_mapping(mapping_id)
    return Response(status_code=204)


@usage_router.post("/records", response_model=RecordedUsage, response_model_exclude_none=True, status_code=201)
def record_usage(payload: MaterialUsageCreate, usage: UsageTracker = Depends(get_usage)):
    """Store one consumption record; a wastage alert comes back with it when raised"""
    record, alert = usage.record_usage(payload)
    return RecordedUsage(usage=record, alert=alert)


@usage_router.get("/records", response_model=UsagePage, response_model_exclude_none=True)
def list_usage(
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None,
    testId: Optional[str] = None,
    productId: Optional[str] = None,
    technician: Optional[str] = None,
    limit: int = Query(default=PAGE_SIZE, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    usage: UsageTracker = Depends(get_usage),
):
    return usage.list_usage(startDate, endDate, testId, productId, technician, limit=limit, offset=offset)


@usage_router.get("/analysis", response_model=UsageAnalysis)
def usage_analysis(
    startDate: datetime,
    endDate: datetime,
    testId: Optional[str] = None,
    productId: Optional[str] = None,
    usage: UsageTracker = Depends(get_usage),
):
    return usage.analysis(startDate, endDate, test_id=testId, product_id=productId)


@usage_router.get("/metrics", response_model=UsageMetrics)
def usage_metrics(usage: UsageTracker = Depends(get_usage)):
    return usage.metrics()


@usage_router.post("/alerts", response_model=UsageAlert, response_model_exclude_none=True, status_code=201)
def create_alert(payload: UsageAlertCreate, usage: UsageTracker = Depends(get_usage)):
    return usage.create_alert(payload)


@usage_router.get("/alerts", response_model=List[UsageAlert], response_model_exclude_none=True)
def list_alerts(unreadOnly: bool = False, usage: UsageTracker = Depends(get_usage)):
    return usage.list_alerts(unread_only=unreadOnly)


@usage_router.post("/alerts/{alert_id}/read", response_model=UsageAlert, response_model_exclude_none=True)
def mark_alert_read(alert_id: str, usage: UsageTracker = Depends(get_usage)):
    return usage.mark_alert_read(alert_id)


@usage_router.post("/alerts/{alert_id}/resolve", response_model=UsageAlert, response_model_exclude_none=True)
def resolve_alert(
    alert_id: str,
    actor: Actor = Depends(get_actor),
    usage: UsageTracker = Depends(get_usage),
):
    return usage.resolve_alert(alert_id, actor.name)


# ==================== NOTIFICATION SURFACE ====================

def _send_email(
    request: Request,
    body: Dict[str, Any],
    model,
    required: List[str],
    method: str,
    success: str,
    failure: str,
):
    missing = [field for field in required if body.get(field) in (None, "")]
    if missing:
        raise HTTPException(
            status_code=400,
            detail={"error": "Missing required fields", "required": required, "received": body},
        )

    try:
        payload: BaseModel = model.model_validate(body)
    except ValidationError:
        raise HTTPException(
            status_code=400,
            detail={"error": "Missing required fields", "required": required, "received": body},
        )

    try:
        getattr(request.app.state.mailer_client, method)(payload)
    except Exception as e:
        logger.error(f"{failure}: {e}")
        raise HTTPException(status_code=500, detail={"error": failure, "details": str(e)})

    return {"message": success}


@notifications_router.post("/api/email/approval")
def send_approval_email(request: Request, body: Dict[str, Any] = Body(...)):
    return _send_email(
        request, body, ApprovalEmail,
        ["requisitionId", "approverEmail", "requesterName", "department"],
        "send_approval", "Email sent successfully", "Failed to send email",
    )


@notifications_router.post("/api/email/rejection")
def send_rejection_email(request: Request, body: Dict[str, Any] = Body(...)):
    return _send_email(
        request, body, RejectionEmail,
        ["requisitionId", "requesterEmail", "rejectorName", "reason", "stage"],
        "send_rejection", "Rejection email sent successfully", "Failed to send rejection email",
    )


@notifications_router.post("/api/email/issuance")
def send_issuance_email(request: Request, body: Dict[str, Any] = Body(...)):
    return _send_email(
        request, body, IssuanceEmail,
        ["requisitionId", "requesterEmail", "requesterName", "issuedProducts"],
        "send_issuance", "Issuance email sent successfully", "Failed to send issuance email",
    )


@notifications_router.post("/api/email/driver-handover")
def send_driver_handover_email(request: Request, body: Dict[str, Any] = Body(...)):
    return _send_email(
        request, body, DriverHandoverEmail,
        ["requisitionId", "requesterEmail", "requesterName", "driverName", "dispatchNumber"],
        "send_driver_handover", "Driver handover email sent successfully", "Failed to send driver handover email",
    )


@notifications_router.post("/api/email/receipt-confirmation")
def send_receipt_confirmation_email(request: Request, body: Dict[str, Any] = Body(...)):
    return _send_email(
        request, body, ReceiptConfirmationEmail,
        ["requisitionId", "requesterEmail", "requesterName", "dispatchNumber"],
        "send_receipt_confirmation", "Receipt confirmation email sent successfully",
        "Failed to send receipt confirmation email",
    )


@notifications_router.post("/api/email/task-assignment")
def send_task_assignment_email(request: Request, body: Dict[str, Any] = Body(...)):
    return _send_email(
        request, body, TaskAssignmentEmail,
        ["taskId", "assignedToEmail", "assignedToName", "assignedByName", "taskTitle", "dueDate"],
        "send_task_assignment", "Task assignment email sent successfully", "Failed to send task assignment email",
    )


@notifications_router.post("/api/email/task-completion")
def send_task_completion_email(request: Request, body: Dict[str, Any] = Body(...)):
    return _send_email(
        request, body, TaskCompletionEmail,
        ["taskId", "assignerEmail", "assignerName", "completedByName", "taskTitle"],
        "send_task_completion", "Task completion email sent successfully", "Failed to send task completion email",
    )


@notifications_router.post("/send-whatsapp-notification")
def send_whatsapp_notification(payload: WhatsAppRequest, request: Request):
    try:
        message_id = request.app.state.whatsapp.send(payload.phoneNumber, payload.message)
    except Exception as e:
        logger.error(f"WhatsApp notification error: {e}")
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})
    return {"success": True, "messageId": message_id}


@notifications_router.post("/send-notification")
def send_push_notification(payload: PushRequest, request: Request):
    try:
        response = request.app.state.push.send(payload.token, payload.message)
    except Exception as e:
        logger.error(f"Error sending notification: {e}")
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})
    return {"success": True, "response": response}
