"""
Outbound notifications for requisition transitions.

Notifications are detached: the dispatcher hands each one to a worker pool
after the transition has committed and only logs the outcome. A slow or
failing email service never changes the result of a transition.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional, Set

import requests
from pydantic import BaseModel

from errors import DownstreamUnavailable
from models import (
    ApprovalEmail,
    DriverHandoverEmail,
    EmailIssuedItem,
    IssuanceEmail,
    ReceiptConfirmationEmail,
    RejectionEmail,
    Requisition,
    TaskAssignmentEmail,
    TaskCompletionEmail,
)
from store import Directory

logger = logging.getLogger(__name__)


class ApprovalRules:
    """Resolves who approves a requisition and where to reach them"""

    def __init__(self, directory: Directory, finance_role: str = "Finance Manager", fulfillment_role: str = "Accounts Clerk"):
        self.directory = directory
        self.finance_role = finance_role
        self.fulfillment_role = fulfillment_role

    def department_head(self, department: str) -> str:
        return self.directory.department_head(department)

    def approver_email(self, name_or_role: str) -> str:
        return self.directory.email_for(name_or_role)


class EmailApiClient:
    """Posts notification payloads to a remote email service (the /api/email routes)"""

    def __init__(self, base_url: str, timeout: float = 10, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, path: str, payload: BaseModel):
        url = f"{self.base_url}/email/{path}"
        try:
            response = self.session.post(
                url,
                json=payload.model_dump(mode="json", exclude_none=True),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise DownstreamUnavailable(f"Failed to send {path} email: {e}") from e
        if not response.ok:
            raise DownstreamUnavailable(f"Failed to send {path} email ({response.status_code})")

    def send_approval(self, payload: ApprovalEmail):
        self._post("approval", payload)

    def send_rejection(self, payload: RejectionEmail):
        self._post("rejection", payload)

    def send_issuance(self, payload: IssuanceEmail):
        self._post("issuance", payload)

    def send_driver_handover(self, payload: DriverHandoverEmail):
        self._post("driver-handover", payload)

    def send_receipt_confirmation(self, payload: ReceiptConfirmationEmail):
        self._post("receipt-confirmation", payload)

    def send_task_assignment(self, payload: TaskAssignmentEmail):
        self._post("task-assignment", payload)

    def send_task_completion(self, payload: TaskCompletionEmail):
        self._post("task-completion", payload)


class NotificationDispatcher:
    def __init__(self, email_client, rules: ApprovalRules, executor: Optional[ThreadPoolExecutor] = None, max_workers: int = 4):
        self.email_client = email_client
        self.rules = rules
        self.executor = executor or ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")
        self._pending: Set[Future] = set()
        self._idle = threading.Condition()

    # ---- plumbing

    def _submit(self, description: str, task: Callable[[], None]):
        try:
            future = self.executor.submit(task)
        except RuntimeError as e:
            logger.error(f"Could not schedule {description}: {e}")
            return
        with self._idle:
            self._pending.add(future)
        future.add_done_callback(lambda f: self._finished(description, f))

    def _finished(self, description: str, future: Future):
        error = future.exception()
        if error is not None:
            logger.error(f"Failed to send {description}: {error}")
        else:
            logger.info(f"Sent {description}")
        with self._idle:
            self._pending.discard(future)
            self._idle.notify_all()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every scheduled notification has finished and been logged"""
        with self._idle:
            return self._idle.wait_for(lambda: not self._pending, timeout=timeout)

    def shutdown(self, wait: bool = True):
        self.executor.shutdown(wait=wait)

    def _approval_request(self, description: str, requisition: Requisition, approver: str):
        def task():
            email = self.rules.approver_email(approver)
            if not email:
                logger.warning(f"Could not find email for {approver or 'unassigned approver'}; {description} skipped")
                return
            self.email_client.send_approval(ApprovalEmail(
                requisitionId=requisition.id,
                approverEmail=email,
                requesterName=requisition.requestedBy,
                department=requisition.department,
            ))

        self._submit(f"{description} for {requisition.dispatchNumber}", task)

    # ---- one hook per transition

    def requisition_submitted(self, requisition: Requisition):
        self._approval_request("approval email to department head", requisition, requisition.approver1)

    def requisition_confirmed(self, requisition: Requisition):
        self._approval_request("approval email to finance", requisition, self.rules.finance_role)

    def requisition_approved(self, requisition: Requisition):
        self._approval_request("approval email to fulfillment", requisition, self.rules.fulfillment_role)

    def requisition_rejected(self, requisition: Requisition):
        payload = RejectionEmail(
            requisitionId=requisition.id,
            requesterEmail=requisition.requesterEmail,
            rejectorName=requisition.rejectedBy or "Unknown",
            reason=requisition.rejectionReason or "-",
            stage=requisition.rejectedStage.value if requisition.rejectedStage else "Unknown",
        )
        self._submit(
            f"rejection email for {requisition.dispatchNumber}",
            lambda: self.email_client.send_rejection(payload),
        )

    def requisition_issued(self, requisition: Requisition):
        payload = IssuanceEmail(
            requisitionId=requisition.id,
            requesterEmail=requisition.requesterEmail,
            requesterName=requisition.requestedBy,
            issuedProducts=[
                EmailIssuedItem(name=item.name, issuedQuantity=item.issuedQuantity, unit=item.unit)
                for item in requisition.issuedProducts or []
            ],
            notes=requisition.issuanceNotes,
        )
        self._submit(
            f"issuance email for {requisition.dispatchNumber}",
            lambda: self.email_client.send_issuance(payload),
        )

    def handover_confirmed(self, requisition: Requisition):
        payload = DriverHandoverEmail(
            requisitionId=requisition.id,
            requesterEmail=requisition.requesterEmail,
            requesterName=requisition.requestedBy,
            driverName=requisition.driverReceivedBy or "Unknown",
            dispatchNumber=requisition.dispatchNumber,
        )
        self._submit(
            f"handover email for {requisition.dispatchNumber}",
            lambda: self.email_client.send_driver_handover(payload),
        )

    def receipt_confirmed(self, requisition: Requisition):
        payload = ReceiptConfirmationEmail(
            requisitionId=requisition.id,
            requesterEmail=requisition.requesterEmail,
            requesterName=requisition.requestedBy,
            dispatchNumber=requisition.dispatchNumber,
        )
        self._submit(
            f"receipt confirmation email for {requisition.dispatchNumber}",
            lambda: self.email_client.send_receipt_confirmation(payload),
        )
