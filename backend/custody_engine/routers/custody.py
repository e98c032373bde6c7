"""
Custody API Routes

Endpoints for the custody / vehicle-replacement workflow.
Thin HTTP glue: every rule lives in the custody services. Workflow errors
are mapped to status codes by the handlers registered in main.py.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import Actor, get_current_actor, require_admin
from ..config import get_settings
from ..database import get_db
from ..models.db_models import (
    ChargeResponsibility, ChargeType, CustodyStatus, DocumentCategory, DocumentType, IntegrationType, ReasonCode,
)
from ..services.custody import CustodyFilters, CustodyService, SqlAlchemyCustodyRepository
from ..services.custody.state_machine import CustodyCreateData


router = APIRouter(prefix="/custody", tags=["custody"])


def get_custody_service(db: Session = Depends(get_db)) -> CustodyService:
    """Dependency - custody service bound to the request's database session."""
    return CustodyService(SqlAlchemyCustodyRepository(db), get_settings())


# =============================================================================
# REQUEST MODELS
# =============================================================================

class ApproveRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=5000, description="Approver comments")


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=5000, description="Why the custody is rejected")


class AssignVehicleRequest(BaseModel):
    replacement_vehicle_id: str = Field(..., min_length=1, description="Vehicle handed to the custodian")


class RecordReturnRequest(BaseModel):
    actual_return_date: datetime = Field(..., description="When the replacement vehicle came back")
    notes: Optional[str] = Field(None, max_length=5000)


class CloseRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=5000)
    actual_return_date: Optional[datetime] = Field(None, description="Return date, if not recorded yet")


class VoidRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=5000, description="Why the custody is cancelled")


class AddDocumentRequest(BaseModel):
    document_type: DocumentType
    file_name: str = Field(..., min_length=1, max_length=255)
    file_url: Optional[str] = Field(None, max_length=500)
    expires_on: Optional[datetime] = None
    document_category: DocumentCategory = DocumentCategory.OPTIONAL


class AddChargeRequest(BaseModel):
    charge_type: ChargeType
    description: str = Field(..., min_length=1, max_length=500)
    quantity: float = Field(1, gt=0)
    unit_price: float = Field(0, ge=0)
    tax_rate: Optional[float] = Field(None, ge=0, le=100, description="Percent; the configured default when omitted")
    responsibility: ChargeResponsibility = ChargeResponsibility.CUSTOMER
    item_code: Optional[str] = Field(None, max_length=50)
    notes: Optional[str] = Field(None, max_length=5000)


class UpdateChargeRequest(BaseModel):
    charge_type: Optional[ChargeType] = None
    description: Optional[str] = Field(None, min_length=1, max_length=500)
    quantity: Optional[float] = Field(None, gt=0)
    unit_price: Optional[float] = Field(None, ge=0)
    tax_rate: Optional[float] = Field(None, ge=0, le=100)
    responsibility: Optional[ChargeResponsibility] = None
    item_code: Optional[str] = Field(None, max_length=50)
    notes: Optional[str] = Field(None, max_length=5000)


class PostChargesRequest(BaseModel):
    charge_ids: List[str] = Field(..., min_length=1)


class NotificationPreferenceRequest(BaseModel):
    email_enabled: Optional[bool] = None
    sms_enabled: Optional[bool] = None
    notify_on_submission: Optional[bool] = None
    notify_on_approval: Optional[bool] = None
    notify_on_rejection: Optional[bool] = None
    notify_on_handover: Optional[bool] = None
    notify_on_closure: Optional[bool] = None
    notify_on_sla_breach: Optional[bool] = None
    email_address: Optional[str] = Field(None, max_length=255)
    phone_number: Optional[str] = Field(None, max_length=30)


class IntegrationSettingRequest(BaseModel):
    is_enabled: Optional[bool] = None
    endpoint_url: Optional[str] = Field(None, max_length=500)
    api_key_name: Optional[str] = Field(None, max_length=100, description="Env var holding the bearer token")
    config: Optional[Dict[str, Any]] = Field(None, description="e.g. auto_create_invoice, auto_submit_accidents")


# =============================================================================
# SERIALIZATION
# =============================================================================

def _serialize(row) -> Dict[str, Any]:
    """Column values of an ORM row as JSON-friendly primitives."""
    result = {}
    for column in row.__mapper__.column_attrs:
        value = getattr(row, column.key)
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        result[column.key] = value
    return result


# =============================================================================
# COLLECTION ENDPOINTS
# =============================================================================

@router.post("", response_model=dict, status_code=201)
def create_custody(
    request: CustodyCreateData,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    """Open a custody transaction in draft."""
    txn = service.state_machine.create(request.model_dump(), created_by=actor.id)
    return _serialize(txn)


@router.get("", response_model=dict)
def list_custodies(
    status: Optional[List[CustodyStatus]] = Query(None),
    reason_code: Optional[List[ReasonCode]] = Query(None),
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    branch_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    agreement_id: Optional[str] = None,
    sla_breached: Optional[bool] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    """Filtered, paginated list, newest first."""
    filters = CustodyFilters(
        status=status,
        reason_code=reason_code,
        date_from=date_from,
        date_to=date_to,
        branch_id=branch_id,
        customer_id=customer_id,
        agreement_id=agreement_id,
        sla_breached=sla_breached,
        search=search,
    )
    result = service.list_custodies(filters, page, page_size)
    return {
        "data": [_serialize(txn) for txn in result.data],
        "total_count": result.total_count,
        "page": result.page,
        "page_size": result.page_size,
        "total_pages": result.total_pages,
    }


@router.get("/statistics", response_model=dict)
def get_statistics(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    """Dashboard KPIs for a date range."""
    return service.get_statistics(date_from, date_to)


@router.get("/webhook-logs", response_model=list)
def list_webhook_logs(
    custody_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=100),
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    """Delivery attempts, newest first."""
    return [_serialize(entry) for entry in service.list_webhook_logs(custody_id, limit)]


@router.get("/notification-preferences", response_model=dict)
def get_notification_preferences(
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    return _serialize(service.get_notification_preference(actor.id))


@router.put("/notification-preferences", response_model=dict)
def update_notification_preferences(
    request: NotificationPreferenceRequest,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    changes = request.model_dump(exclude_unset=True)
    return _serialize(service.update_notification_preference(actor.id, changes))


@router.get("/integrations", response_model=list)
def list_integrations(
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    return [_serialize(setting) for setting in service.list_integration_settings()]


@router.put("/integrations/{integration_type}", response_model=dict)
def update_integration(
    integration_type: IntegrationType,
    request: IntegrationSettingRequest,
    service: CustodyService = Depends(get_custody_service),
    admin: Actor = Depends(require_admin),
):
    """Enable, point or configure a partner integration. Admin only."""
    setting = service.update_integration_setting(
        integration_type.value,
        is_enabled=request.is_enabled,
        endpoint_url=request.endpoint_url,
        api_key_name=request.api_key_name,
        config=request.config,
    )
    return _serialize(setting)


# =============================================================================
# SINGLE TRANSACTION ENDPOINTS
# =============================================================================

@router.get("/{custody_id}", response_model=dict)
def get_custody(
    custody_id: str,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    return _serialize(service.get_custody(custody_id))


@router.delete("/{custody_id}", status_code=204)
def delete_custody(
    custody_id: str,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    """Delete a draft. Anything past draft is immutable."""
    service.state_machine.delete(custody_id)
    return Response(status_code=204)


@router.post("/{custody_id}/submit", response_model=dict)
def submit_custody(
    custody_id: str,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    """draft -> pending_approval. Stamps SLA targets and assigns approvers."""
    return _serialize(service.state_machine.submit_for_approval(custody_id, actor.id))


@router.post("/{custody_id}/approve", response_model=dict)
def approve_custody(
    custody_id: str,
    request: ApproveRequest,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    """Record the acting approver's acceptance."""
    return _serialize(service.state_machine.approve(custody_id, actor.id, request.notes))


@router.post("/{custody_id}/reject", response_model=dict)
def reject_custody(
    custody_id: str,
    request: RejectRequest,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    """Veto the custody. One rejection voids it."""
    return _serialize(service.state_machine.reject(custody_id, actor.id, request.reason))


@router.put("/{custody_id}/replacement-vehicle", response_model=dict)
def assign_replacement_vehicle(
    custody_id: str,
    request: AssignVehicleRequest,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    txn = service.state_machine.assign_replacement_vehicle(custody_id, request.replacement_vehicle_id, actor.id)
    return _serialize(txn)


@router.post("/{custody_id}/activate", response_model=dict)
def activate_custody(
    custody_id: str,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    """approved -> active (vehicle handover)."""
    return _serialize(service.state_machine.activate(custody_id, actor.id))


@router.post("/{custody_id}/return", response_model=dict)
def record_return(
    custody_id: str,
    request: RecordReturnRequest,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    txn = service.state_machine.record_return(custody_id, request.actual_return_date, request.notes, actor.id)
    return _serialize(txn)


@router.post("/{custody_id}/close", response_model=dict)
def close_custody(
    custody_id: str,
    request: CloseRequest,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    """active -> closed. Terminal."""
    txn = service.state_machine.close(custody_id, actor.id, request.notes, request.actual_return_date)
    return _serialize(txn)


@router.post("/{custody_id}/void", response_model=dict)
def void_custody(
    custody_id: str,
    request: VoidRequest,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    """Administrative cancellation from any non-terminal state."""
    return _serialize(service.state_machine.void(custody_id, request.reason, actor.id))


@router.get("/{custody_id}/approvals", response_model=list)
def list_approvals(
    custody_id: str,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    return [_serialize(a) for a in service.list_approvals(custody_id)]


@router.get("/{custody_id}/pending-approvers", response_model=list)
def pending_approvers(
    custody_id: str,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    return service.pending_approvers(custody_id)


@router.get("/{custody_id}/documents", response_model=list)
def list_documents(
    custody_id: str,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    return [_serialize(d) for d in service.list_documents(custody_id)]


@router.post("/{custody_id}/documents", response_model=dict, status_code=201)
def add_document(
    custody_id: str,
    request: AddDocumentRequest,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    document = service.add_document(
        custody_id,
        request.document_type.value,
        request.file_name,
        file_url=request.file_url,
        expires_on=request.expires_on,
        document_category=request.document_category.value,
        uploaded_by=actor.id,
    )
    return _serialize(document)


@router.get("/{custody_id}/charges", response_model=list)
def list_charges(
    custody_id: str,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    return [_serialize(c) for c in service.list_charges(custody_id)]


@router.post("/{custody_id}/charges", response_model=dict, status_code=201)
def add_charge(
    custody_id: str,
    request: AddChargeRequest,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    charge = service.add_charge(
        custody_id,
        request.charge_type.value,
        request.description,
        quantity=request.quantity,
        unit_price=request.unit_price,
        tax_rate=request.tax_rate,
        responsibility=request.responsibility.value,
        item_code=request.item_code,
        notes=request.notes,
    )
    return _serialize(charge)


@router.put("/{custody_id}/charges/{charge_id}", response_model=dict)
def update_charge(
    custody_id: str,
    charge_id: str,
    request: UpdateChargeRequest,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    """Edit a draft charge. Posted charges answer 409."""
    changes = request.model_dump(exclude_unset=True, mode="json")
    return _serialize(service.update_charge(charge_id, changes, custody_id=custody_id))


@router.post("/{custody_id}/charges/post", response_model=list)
def post_charges(
    custody_id: str,
    request: PostChargesRequest,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    """Lock the selected draft charges for billing, all or none."""
    charges = service.post_charges(custody_id, request.charge_ids, actor.id)
    return [_serialize(c) for c in charges]


@router.get("/{custody_id}/audit-log", response_model=list)
def get_audit_log(
    custody_id: str,
    service: CustodyService = Depends(get_custody_service),
    actor: Actor = Depends(get_current_actor),
):
    """Every transition, newest first."""
    return [_serialize(entry) for entry in service.get_audit_log(custody_id)]
