"""
Requisition lifecycle.

Every transition follows the same shape:
1. Re-read the requisition inside a BEGIN IMMEDIATE transaction
2. Ask workflow.next_status() for the target (raises InvalidState otherwise)
3. Check the caller, mutate, save
4. After commit, hand the notification to the dispatcher

Issuance applies its stock batch inside the same transaction as the status
change, so two concurrent issues of one requisition decrement stock once.
"""

import logging
import sqlite3
import uuid
from typing import Callable, List, Optional, Tuple

from errors import InsufficientStock, PermissionDenied, ValidationFailed
from ledger import StockLedger
from models import (
    FINANCE_APPROVER,
    Actor,
    ApproveRequest,
    ConfirmRequest,
    FinalReceiptRequest,
    HandoverRequest,
    IssuedProduct,
    IssueLine,
    IssueRequest,
    LineItem,
    LineItemCreate,
    MovementReason,
    Product,
    ProductCreate,
    RejectionStage,
    RejectRequest,
    Requisition,
    RequisitionAmend,
    RequisitionCreate,
    RequisitionStatus,
    ShortageLine,
    utcnow,
)
from notifications import ApprovalRules, NotificationDispatcher
from numbering import DispatchNumberGenerator, is_fallback_number
from store import RequisitionRepository, Store, require_id
from workflow import Event, next_status

logger = logging.getLogger(__name__)


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.strip().lower() == b.strip().lower()


class RequisitionService:
    INSERT_ATTEMPTS = 5

    def __init__(
        self,
        store: Store,
        ledger: StockLedger,
        numbers: DispatchNumberGenerator,
        rules: ApprovalRules,
        notifier: NotificationDispatcher,
        admin_role: str = "Admin",
        clock: Callable = utcnow,
    ):
        self.store = store
        self.ledger = ledger
        self.products = ledger.products
        self.numbers = numbers
        self.rules = rules
        self.notifier = notifier
        self.admin_role = admin_role
        self.clock = clock
        self.requisitions = RequisitionRepository(store)

    # ---- caller checks

    def _is_admin(self, actor: Actor) -> bool:
        return _same(actor.role, self.admin_role)

    def _require_role(self, actor: Actor, role: str, action: str):
        if not (_same(actor.role, role) or self._is_admin(actor)):
            raise PermissionDenied(f"Only the {role} can {action} requisitions")

    def _require_approver1(self, actor: Actor, requisition: Requisition, action: str):
        if not (_same(actor.name, requisition.approver1) or self._is_admin(actor)):
            raise PermissionDenied(
                f"Only {requisition.approver1 or 'the department head'} can {action} this requisition"
            )

    # ---- helpers

    def _build_lines(self, items: List[LineItemCreate]) -> List[LineItem]:
        """Line item rules shared by submit and amend"""
        if not items:
            raise ValidationFailed("At least one product is required")

        seen = set()
        for item in items:
            if item.productId in seen:
                raise ValidationFailed(f"Product {item.productId} appears more than once")
            seen.add(item.productId)

        lines, missing = [], []
        for item in items:
            product = self.products.find(item.productId)
            if product is None:
                missing.append(f"Product {item.name or item.productId} not found in the system")
                continue
            lines.append(LineItem(
                productId=item.productId,
                name=item.name or product.name,
                unit=item.unit,
                requestedQuantity=item.requestedQuantity,
            ))
        if missing:
            raise ValidationFailed("Validation failed:\n" + "\n".join(missing))
        return lines

    def _insert_numbered(self, requisition: Requisition):
        """
        Insert a new requisition, renumbering it if its dispatch number is taken.

        Fallback numbers can collide across processes, and a sequential
        number can collide after the counter was reset backwards. Either way
        the requisition is given a fresh number and the insert retried.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                with self.store.transaction():
                    self.requisitions.insert(requisition)
                return
            except sqlite3.IntegrityError as e:
                if attempt >= self.INSERT_ATTEMPTS:
                    raise
                taken = requisition.dispatchNumber
                if is_fallback_number(taken):
                    requisition.dispatchNumber = self.numbers.fallback()
                else:
                    requisition.dispatchNumber = self.numbers.next()
                logger.warning(f"Dispatch number {taken} already in use ({e}), retrying as {requisition.dispatchNumber}")

    def _transition(self, requisition_id: str, event: Event, apply: Callable, via_driver: bool = False):
        """Run one guarded transition; returns the saved requisition and apply()'s result"""
        with self.store.transaction():
            requisition = self.requisitions.get(requisition_id)
            target = next_status(requisition.status, event, via_driver)
            result = apply(requisition)
            previous = requisition.status
            requisition.status = target
            requisition.updatedAt = self.clock()
            self.requisitions.save(requisition)

        logger.info(f"Requisition {requisition.dispatchNumber}: {previous.value} -> {target.value} ({event.value})")
        return requisition, result

    # ---- queries

    def get(self, requisition_id: str) -> Requisition:
        require_id(requisition_id)
        return self.requisitions.get(requisition_id)

    def list(self, status: Optional[RequisitionStatus] = None, requested_by: Optional[str] = None) -> List[Requisition]:
        return self.requisitions.list(status=status, requested_by=requested_by)

    # ---- transitions

    def submit(self, payload: RequisitionCreate) -> Requisition:
        if not payload.requestedBy.strip():
            raise ValidationFailed("Requester name is required")
        if not payload.requesterEmail.strip():
            raise ValidationFailed("Requester email is required")
        lines = self._build_lines(payload.products)
        status = next_status(None, Event.SUBMIT)

        dispatch_number = self.numbers.next()
        approver1 = self.rules.department_head(payload.department)
        if not approver1:
            logger.warning(f"No department head on record for {payload.department}")

        now = self.clock()
        requisition = Requisition(
            id=str(uuid.uuid4()),
            dispatchNumber=dispatch_number,
            requestDate=payload.requestDate or now,
            department=payload.department,
            requestedBy=payload.requestedBy.strip(),
            requesterEmail=payload.requesterEmail.strip(),
            comments=payload.comments,
            status=status,
            products=lines,
            approver1=approver1,
            approver2=FINANCE_APPROVER,
            createdAt=now,
            updatedAt=now,
        )
        self._insert_numbered(requisition)

        logger.info(f"Requisition {requisition.dispatchNumber} submitted by {requisition.requestedBy} ({requisition.department})")
        self.notifier.requisition_submitted(requisition)
        return requisition

    def amend(self, requisition_id: str, actor: Actor, payload: RequisitionAmend) -> Requisition:
        require_id(requisition_id)
        lines = self._build_lines(payload.products) if payload.products is not None else None

        def apply(requisition: Requisition):
            if not (_same(actor.name, requisition.requestedBy) or self._is_admin(actor)):
                raise PermissionDenied("Only the requester can amend this requisition")
            if lines is not None:
                requisition.products = lines
            if payload.requestDate is not None:
                requisition.requestDate = payload.requestDate
            if payload.comments is not None:
                requisition.comments = payload.comments

        requisition, _ = self._transition(requisition_id, Event.AMEND, apply)
        return requisition

    def confirm(self, requisition_id: str, actor: Actor, payload: ConfirmRequest) -> Requisition:
        """Department head approval; unlisted lines are approved at the requested quantity"""
        require_id(requisition_id)
        approved = {line.productId: line for line in payload.approvedProducts}

        def apply(requisition: Requisition):
            self._require_approver1(actor, requisition, "confirm")
            unknown = [pid for pid in approved if requisition.line_for(pid) is None]
            if unknown:
                raise ValidationFailed(f"Products not on this requisition: {', '.join(unknown)}")

            for line in requisition.products:
                decision = approved.get(line.productId)
                if decision is None:
                    line.approvedQuantity = line.requestedQuantity
                    line.approvalNotes = ""
                else:
                    line.approvedQuantity = decision.approvedQuantity
                    line.approvalNotes = decision.approvalNotes or ""
            requisition.approver1Comments = payload.comments or ""
            requisition.confirmedBy = actor.name
            requisition.confirmedAt = self.clock()

        requisition, _ = self._transition(requisition_id, Event.CONFIRM, apply)
        self.notifier.requisition_confirmed(requisition)
        return requisition

    def reject(self, requisition_id: str, actor: Actor, payload: RejectRequest) -> Requisition:
        require_id(requisition_id)
        reason = (payload.reason or "").strip()
        if not reason:
            raise ValidationFailed("Rejection reason is required")

        def apply(requisition: Requisition):
            if requisition.status == RequisitionStatus.PENDING:
                stage = RejectionStage.DEPARTMENT_HEAD
            else:
                stage = RejectionStage.FINANCE_MANAGER
            if payload.stage is not None and payload.stage != stage:
                raise ValidationFailed(
                    f"Requisition is {requisition.status.value}; it cannot be rejected at the {payload.stage.value} stage"
                )

            if stage == RejectionStage.DEPARTMENT_HEAD:
                self._require_approver1(actor, requisition, "reject")
            else:
                self._require_role(actor, self.rules.finance_role, "reject confirmed")

            requisition.rejectionReason = reason
            requisition.rejectedBy = actor.name
            requisition.rejectedAt = self.clock()
            requisition.rejectedStage = stage

        requisition, _ = self._transition(requisition_id, Event.REJECT, apply)
        self.notifier.requisition_rejected(requisition)
        return requisition

    def approve(self, requisition_id: str, actor: Actor, payload: ApproveRequest) -> Requisition:
        require_id(requisition_id)

        def apply(requisition: Requisition):
            self._require_role(actor, self.rules.finance_role, "approve")
            requisition.approver2Comments = payload.comments or ""
            requisition.approvedBy = actor.name
            requisition.approvedAt = self.clock()

        requisition, _ = self._transition(requisition_id, Event.APPROVE, apply)
        self.notifier.requisition_approved(requisition)
        return requisition

    def _issue_lines(self, requisition: Requisition, requested: Optional[List[IssueLine]]) -> List[IssuedProduct]:
        """Resolve what will be issued; defaults to the approved quantities"""
        if requested is None:
            return [
                IssuedProduct(
                    productId=line.productId,
                    name=line.name,
                    unit=line.unit,
                    requestedQuantity=line.requestedQuantity,
                    issuedQuantity=line.approvedQuantity if line.approvedQuantity is not None else line.requestedQuantity,
                )
                for line in requisition.products
            ]

        if not requested:
            raise ValidationFailed("At least one product must be issued")

        issued, seen = [], set()
        for item in requested:
            line = requisition.line_for(item.productId)
            if line is None:
                raise ValidationFailed(f"Product {item.productId} is not on this requisition")
            if item.productId in seen:
                raise ValidationFailed(f"Product {item.productId} appears more than once")
            seen.add(item.productId)
            issued.append(IssuedProduct(
                productId=line.productId,
                name=line.name,
                unit=line.unit,
                requestedQuantity=line.requestedQuantity,
                issuedQuantity=item.issuedQuantity,
            ))
        return issued

    def preview_issue(self, requisition_id: str, requested: Optional[List[IssueLine]] = None) -> List[ShortageLine]:
        """Stock on hand against each line to be issued; moves nothing"""
        requisition = self.get(requisition_id)
        next_status(requisition.status, Event.ISSUE)

        issued = self._issue_lines(requisition, requested)
        report = self.ledger.shortage_report(
            [(item.productId, item.issuedQuantity) for item in issued],
            names={item.productId: (item.name, item.unit) for item in issued},
            include_covered=True,
        )
        return [ShortageLine(**line.to_dict()) for line in report]

    def issue(self, requisition_id: str, actor: Actor, payload: IssueRequest) -> Tuple[Requisition, List[InsufficientStock]]:
        """
        Issue stock against an approved requisition.

        Shortages never block issuance: stock is decremented in full (going
        negative) and each shortfall is appended to the issuance notes and
        returned to the caller.
        """
        require_id(requisition_id)

        def apply(requisition: Requisition):
            self._require_role(actor, self.rules.fulfillment_role, "issue")
            issued = self._issue_lines(requisition, payload.issuedProducts)

            batch = self.ledger.apply_batch(
                [(item.productId, -item.issuedQuantity) for item in issued if item.issuedQuantity],
                reason=MovementReason.ISSUE,
                reference=requisition.dispatchNumber,
                names={item.productId: (item.name, item.unit) for item in issued},
            )

            notes = (payload.notes or "").strip()
            if batch.shortages:
                shortage_text = "\n".join(shortage.describe() for shortage in batch.shortages)
                if notes:
                    notes = f"{notes}\n\nStock Shortage:\n{shortage_text}"
                else:
                    notes = f"Stock Shortage:\n{shortage_text}"
                logger.warning(f"Requisition {requisition.dispatchNumber} issued with {len(batch.shortages)} shortage(s)")

            requisition.issuedProducts = issued
            requisition.issuedBy = actor.name
            requisition.issuedAt = self.clock()
            requisition.issuanceNotes = notes or None
            requisition.receivedBy = payload.receivedBy or None
            requisition.receiverSignature = payload.signature or None
            return batch.shortages

        requisition, shortages = self._transition(requisition_id, Event.ISSUE, apply, via_driver=payload.isDriver)
        self.notifier.requisition_issued(requisition)
        return requisition, shortages

    def confirm_handover(self, requisition_id: str, payload: HandoverRequest) -> Requisition:
        """Driver hands the goods to the requesting department"""
        require_id(requisition_id)
        recipient = payload.recipientName.strip()
        if not recipient:
            raise ValidationFailed("Recipient name is required")
        if not payload.signature:
            raise ValidationFailed("Signature is required")

        def apply(requisition: Requisition):
            requisition.driverReceivedBy = recipient
            requisition.driverReceivedAt = self.clock()
            requisition.driverSignature = payload.signature
            requisition.driverHandoverNotes = payload.notes or ""

        requisition, _ = self._transition(requisition_id, Event.CONFIRM_HANDOVER, apply)
        self.notifier.handover_confirmed(requisition)
        return requisition

    def confirm_final_receipt(self, requisition_id: str, payload: FinalReceiptRequest) -> Requisition:
        require_id(requisition_id)
        receiver = payload.receiverName.strip()
        if not receiver:
            raise ValidationFailed("Receiver name is required")
        if not payload.signature:
            raise ValidationFailed("Signature is required")

        def apply(requisition: Requisition):
            requisition.finalReceivedBy = receiver
            requisition.finalReceivedAt = self.clock()
            requisition.finalSignature = payload.signature
            requisition.receiptMethod = payload.receiptMethod
            requisition.finalReceiptNotes = payload.notes or ""

        requisition, _ = self._transition(requisition_id, Event.CONFIRM_FINAL_RECEIPT, apply)
        self.notifier.receipt_confirmed(requisition)
        return requisition


def create_product(ledger: StockLedger, payload: ProductCreate) -> Product:
    """Register a product; an opening balance goes through the ledger as a receipt"""
    product_id = payload.id or str(uuid.uuid4())
    with ledger.store.transaction():
        ledger.products.insert(product_id, payload.code, payload.name, payload.category, payload.unitPrice)
        ledger.receive_opening_balance(product_id, payload.quantity)
    logger.info(f"Product {payload.code} created with opening balance {payload.quantity}")
    return ledger.products.get(product_id)
