"""
In-process delivery for the notification HTTP surface: HTML templates,
SMTP sending, WhatsApp through Twilio and push through FCM.
"""

import html
import logging
import smtplib
import threading
from datetime import datetime
from email.message import EmailMessage
from typing import Optional, Tuple

import requests
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request as AuthRequest
from google.oauth2 import service_account

from errors import DownstreamUnavailable
from models import (
    ApprovalEmail,
    DriverHandoverEmail,
    IssuanceEmail,
    PushMessage,
    ReceiptConfirmationEmail,
    RejectionEmail,
    TaskAssignmentEmail,
    TaskCompletionEmail,
)

logger = logging.getLogger(__name__)

LOGO_URL = "https://labpartners.co.zw/wp-content/uploads/2022/09/logo-small.png"


def _e(value) -> str:
    return html.escape(str(value)) if value is not None else ""


def _format_date(value: Optional[str], with_time: bool = False) -> str:
    if not value:
        moment = datetime.now()
        with_time = False
    else:
        try:
            moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    text = f"{moment:%B} {moment.day}, {moment.year}"
    if with_time:
        text += f" at {moment:%I:%M %p}"
    return text


# ==================== TEMPLATES ====================

def render_approval(payload: ApprovalEmail) -> Tuple[str, str]:
    body = f"""
        <h2>New Requisition Requires Your Approval</h2>
        <p>A new requisition (ID: {_e(payload.requisitionId)}) requires your approval.</p>
        <p><strong>Details:</strong></p>
        <ul>
          <li>Requester: {_e(payload.requesterName)}</li>
          <li>Department: {_e(payload.department)}</li>
        </ul>
        <p>Please login to the system to review and approve/reject this request.</p>
    """
    return "New Requisition Approval Required", body


def render_rejection(payload: RejectionEmail) -> Tuple[str, str]:
    body = f"""
        <h2>Your Inventory Request Has Been Rejected</h2>
        <p>Your inventory request (ID: {_e(payload.requisitionId)}) has been rejected.</p>
        <p><strong>Details:</strong></p>
        <ul>
          <li>Rejected by: {_e(payload.rejectorName)}</li>
          <li>Stage: {_e(payload.stage)}</li>
          <li>Reason: {_e(payload.reason)}</li>
        </ul>
        <p>Please login to the system to view the full details and submit a new request if needed.</p>
    """
    return "Inventory Request Rejected", body


def render_issuance(payload: IssuanceEmail) -> Tuple[str, str]:
    rows = "".join(
        f"""
          <tr>
            <td>{index}</td>
            <td>{_e(item.name)}</td>
            <td>{item.issuedQuantity}</td>
            <td>{_e(item.unit)}</td>
          </tr>"""
        for index, item in enumerate(payload.issuedProducts, start=1)
    )
    notes = f"<p><strong>Notes:</strong> {_e(payload.notes)}</p>" if payload.notes else ""
    body = f"""
        <h2>Your Inventory Request Has Been Issued</h2>
        <p>Dear {_e(payload.requesterName)},</p>
        <p>Your inventory request (ID: {_e(payload.requisitionId)}) has been processed and the items have been issued.</p>

        <h3>Issued Items:</h3>
        <table border="1" cellpadding="5" cellspacing="0" style="border-collapse: collapse; width: 100%;">
          <thead>
            <tr style="background-color: #f2f2f2;">
              <th>No.</th>
              <th>Product</th>
              <th>Quantity Issued</th>
              <th>Unit</th>
            </tr>
          </thead>
          <tbody>{rows}
          </tbody>
        </table>

        {notes}

        <p>Please login to the system to view the full details and confirm receipt.</p>
    """
    return "Inventory Request Issued", body


def render_driver_handover(payload: DriverHandoverEmail) -> Tuple[str, str]:
    body = f"""
        <h2>Your Inventory Request Is On Its Way</h2>
        <p>Dear {_e(payload.requesterName)},</p>
        <p>The items for requisition {_e(payload.dispatchNumber)} (ID: {_e(payload.requisitionId)})
        have been handed to {_e(payload.driverName)} for delivery.</p>
        <p>Please confirm receipt in the system once the items arrive.</p>
    """
    return f"Requisition {payload.dispatchNumber} Handed To Driver", body


def render_receipt_confirmation(payload: ReceiptConfirmationEmail) -> Tuple[str, str]:
    body = f"""
        <h2>Inventory Request Completed</h2>
        <p>Dear {_e(payload.requesterName)},</p>
        <p>Receipt of requisition {_e(payload.dispatchNumber)} (ID: {_e(payload.requisitionId)})
        has been confirmed and the request is now complete.</p>
    """
    return f"Requisition {payload.dispatchNumber} Received", body


def render_task_assignment(payload: TaskAssignmentEmail, portal_url: str) -> Tuple[str, str]:
    priority = payload.priority or "Normal"
    colour = "#fc505a" if priority in ("High", "Urgent") else "#333"
    description = (
        f"<p><strong>Description:</strong> {_e(payload.taskDescription)}</p>"
        if payload.taskDescription else ""
    )
    body = f"""
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
          <div style="text-align: center; margin-bottom: 30px;">
            <img src="{LOGO_URL}" alt="Lab Partners" style="max-width: 150px;" />
          </div>
          <h2 style="color: #333; border-bottom: 2px solid #fc505a; padding-bottom: 10px;">New Task Assigned</h2>
          <p>Dear <strong>{_e(payload.assignedToName)}</strong>,</p>
          <p>A new task has been assigned to you by <strong>{_e(payload.assignedByName)}</strong>.</p>
          <div style="background-color: #f9f9f9; padding: 20px; border-radius: 5px; margin: 20px 0;">
            <h3 style="margin-top: 0; color: #333;">Task Details</h3>
            <p><strong>Task ID:</strong> {_e(payload.taskId)}</p>
            <p><strong>Title:</strong> {_e(payload.taskTitle)}</p>
            {description}
            <p><strong>Priority:</strong> <span style="color: {colour};">{_e(priority)}</span></p>
            <p><strong>Due Date:</strong> {_e(_format_date(payload.dueDate))}</p>
            <p><strong>Assigned By:</strong> {_e(payload.assignedByName)}</p>
          </div>
          <div style="text-align: center; margin: 30px 0;">
            <a href="{_e(portal_url)}/app/tasks?taskId={_e(payload.taskId)}"
               style="background-color: #fc505a; color: white; padding: 12px 30px; text-decoration: none; border-radius: 5px; display: inline-block;">
              View Task
            </a>
          </div>
          <p style="color: #666; font-size: 12px; margin-top: 30px;">
            Please login to the system to view the full task details and start working on it.
          </p>
        </div>
    """
    return f"New Task Assigned: {payload.taskTitle}", body


def render_task_completion(payload: TaskCompletionEmail, portal_url: str) -> Tuple[str, str]:
    body = f"""
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
          <div style="text-align: center; margin-bottom: 30px;">
            <img src="{LOGO_URL}" alt="Lab Partners" style="max-width: 150px;" />
          </div>
          <h2 style="color: #28a745; border-bottom: 2px solid #28a745; padding-bottom: 10px;">&#10003; Task Completed</h2>
          <p>Dear <strong>{_e(payload.assignerName)}</strong>,</p>
          <p>Great news! A task you assigned has been completed.</p>
          <div style="background-color: #f0f9f0; padding: 20px; border-radius: 5px; margin: 20px 0; border-left: 4px solid #28a745;">
            <h3 style="margin-top: 0; color: #333;">Task Details</h3>
            <p><strong>Task ID:</strong> {_e(payload.taskId)}</p>
            <p><strong>Title:</strong> {_e(payload.taskTitle)}</p>
            <p><strong>Completed By:</strong> {_e(payload.completedByName)}</p>
            <p><strong>Completed At:</strong> {_e(_format_date(payload.completedAt, with_time=True))}</p>
          </div>
          <div style="text-align: center; margin: 30px 0;">
            <a href="{_e(portal_url)}/app/tasks?taskId={_e(payload.taskId)}"
               style="background-color: #28a745; color: white; padding: 12px 30px; text-decoration: none; border-radius: 5px; display: inline-block;">
              View Task
            </a>
          </div>
          <p style="color: #666; font-size: 12px; margin-top: 30px;">
            Please login to the system to review the completed task and provide any feedback if needed.
          </p>
        </div>
    """
    return f"Task Completed: {payload.taskTitle}", body


# ==================== TRANSPORTS ====================

class SmtpMailer:
    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        timeout: float = 30,
    ):
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    @classmethod
    def from_config(cls, config) -> "SmtpMailer":
        return cls(
            host=config.SMTP_HOST,
            port=config.SMTP_PORT,
            sender=config.MAIL_SENDER,
            username=config.SMTP_USERNAME,
            password=config.SMTP_PASSWORD,
            use_tls=config.SMTP_USE_TLS,
        )

    def send(self, to: str, subject: str, html_body: str):
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(html_body, subtype="html")

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            raise DownstreamUnavailable(str(e)) from e

        logger.info(f"Email '{subject}' sent to {to}")


class MailerEmailClient:
    """Renders each notification and sends it through a mailer"""

    def __init__(self, mailer, portal_url: str = ""):
        self.mailer = mailer
        self.portal_url = portal_url.rstrip("/")

    def send_approval(self, payload: ApprovalEmail):
        self.mailer.send(payload.approverEmail, *render_approval(payload))

    def send_rejection(self, payload: RejectionEmail):
        self.mailer.send(payload.requesterEmail, *render_rejection(payload))

    def send_issuance(self, payload: IssuanceEmail):
        self.mailer.send(payload.requesterEmail, *render_issuance(payload))

    def send_driver_handover(self, payload: DriverHandoverEmail):
        self.mailer.send(payload.requesterEmail, *render_driver_handover(payload))

    def send_receipt_confirmation(self, payload: ReceiptConfirmationEmail):
        self.mailer.send(payload.requesterEmail, *render_receipt_confirmation(payload))

    def send_task_assignment(self, payload: TaskAssignmentEmail):
        self.mailer.send(payload.assignedToEmail, *render_task_assignment(payload, self.portal_url))

    def send_task_completion(self, payload: TaskCompletionEmail):
        self.mailer.send(payload.assignerEmail, *render_task_completion(payload, self.portal_url))


class TwilioWhatsAppSender:
    API_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"

    def __init__(self, account_sid: str, auth_token: str, from_number: str,
                 session: Optional[requests.Session] = None, timeout: float = 15):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.session = session or requests.Session()
        self.timeout = timeout

    @classmethod
    def from_config(cls, config) -> "TwilioWhatsAppSender":
        return cls(config.TWILIO_ACCOUNT_SID, config.TWILIO_AUTH_TOKEN, config.TWILIO_WHATSAPP_NUMBER)

    def send(self, to: str, body: str) -> str:
        """Send a WhatsApp message and return its message SID"""
        if not (self.account_sid and self.auth_token and self.from_number):
            raise DownstreamUnavailable("Twilio credentials are not configured")

        try:
            response = self.session.post(
                self.API_URL.format(sid=self.account_sid),
                data={
                    "Body": body,
                    "From": f"whatsapp:{self.from_number}",
                    "To": f"whatsapp:{to}",
                },
                auth=(self.account_sid, self.auth_token),
                timeout=self.timeout,
            )
            response.raise_for_status()
            sid = response.json()["sid"]
        except (requests.RequestException, ValueError, KeyError) as e:
            logger.error(f"Failed to send WhatsApp to {to}: {e}")
            raise DownstreamUnavailable(str(e)) from e

        logger.info(f"WhatsApp notification sent to {to}, Message SID: {sid}")
        return sid


class FcmPushSender:
    """
    Push notifications through the FCM HTTP v1 API.

    Authorizes with a Firebase service account. The OAuth2 access token is
    short-lived, so it is refreshed whenever the credentials report it
    missing or expired.
    """

    API_URL = "https://fcm.googleapis.com/v1/projects/{project}/messages:send"
    SCOPES = ["https://www.googleapis.com/auth/firebase.messaging"]

    # message fields forwarded as FCM data (all values must be strings)
    DATA_FIELDS = {
        "sample_id": "sample_id",
        "requested_at": "requestedAt",
        "caller_name": "caller_name",
        "caller_number": "caller_number",
        "lat": "lat",
        "lng": "lng",
        "message": "message",
        "notification_type": "notification_type",
    }

    def __init__(self, project_id: str, credentials=None,
                 session: Optional[requests.Session] = None, timeout: float = 15):
        self.project_id = project_id
        self.credentials = credentials
        self.session = session or requests.Session()
        self.timeout = timeout
        self._token_lock = threading.Lock()

    @classmethod
    def from_service_account(cls, path: str, project_id: str = "") -> "FcmPushSender":
        credentials = service_account.Credentials.from_service_account_file(path, scopes=cls.SCOPES)
        return cls(project_id or credentials.project_id, credentials)

    @classmethod
    def from_config(cls, config) -> "FcmPushSender":
        if not config.FIREBASE_SERVICE_ACCOUNT_PATH:
            return cls(config.FCM_PROJECT_ID)
        return cls.from_service_account(config.FIREBASE_SERVICE_ACCOUNT_PATH, config.FCM_PROJECT_ID)

    def access_token(self) -> str:
        with self._token_lock:
            if not self.credentials.valid:
                self.credentials.refresh(AuthRequest())
                logger.info("FCM access token refreshed")
            return self.credentials.token

    def build_payload(self, token: str, message: PushMessage) -> dict:
        extra = message.model_extra or {}
        data = {}
        for key, source in self.DATA_FIELDS.items():
            value = extra.get(source)
            data[key] = "" if value is None else str(value)
        return {
            "message": {
                "token": token,
                "notification": {"title": message.title, "body": message.body},
                "data": data,
            }
        }

    def send(self, token: str, message: PushMessage) -> dict:
        if not (self.project_id and self.credentials is not None):
            raise DownstreamUnavailable("FCM credentials are not configured")

        try:
            response = self.session.post(
                self.API_URL.format(project=self.project_id),
                json=self.build_payload(token, message),
                headers={"Authorization": f"Bearer {self.access_token()}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            result = response.json()
        except (GoogleAuthError, requests.RequestException, ValueError) as e:
            logger.error(f"Error sending notification: {e}")
            raise DownstreamUnavailable(str(e)) from e

        logger.info("Notification sent successfully")
        return result
