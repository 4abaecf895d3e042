import pytest
from fastapi.testclient import TestClient

from app import create_app
from config import Config
from errors import DownstreamUnavailable
from store import Store

HEAD = {"X-User-Name": "Dr Moyo", "X-User-Role": "Department Head"}
FINANCE = {"X-User-Name": "Tariro Chikwanha", "X-User-Role": "Finance Manager"}
CLERK = {"X-User-Name": "Farai Ncube", "X-User-Role": "Accounts Clerk"}
ADMIN = {"X-User-Name": "System Admin", "X-User-Role": "Admin"}
REQUESTER = {"X-User-Name": "Rudo Dube", "X-User-Role": "Lab Technician"}


class RecordingEmailClient:
    """Stands in for the email service; records each payload by kind"""

    def __init__(self):
        self.calls = []
        self.fail = False

    def _record(self, kind, payload):
        if self.fail:
            raise DownstreamUnavailable("email service unreachable")
        self.calls.append((kind, payload))

    def of_kind(self, kind):
        return [payload for sent_kind, payload in self.calls if sent_kind == kind]

    def send_approval(self, payload):
        self._record("approval", payload)

    def send_rejection(self, payload):
        self._record("rejection", payload)

    def send_issuance(self, payload):
        self._record("issuance", payload)

    def send_driver_handover(self, payload):
        self._record("driver_handover", payload)

    def send_receipt_confirmation(self, payload):
        self._record("receipt_confirmation", payload)

    def send_task_assignment(self, payload):
        self._record("task_assignment", payload)

    def send_task_completion(self, payload):
        self._record("task_completion", payload)


class RecordingMailer:
    def __init__(self):
        self.sent = []
        self.error = None

    def send(self, to, subject, html_body):
        if self.error is not None:
            raise self.error
        self.sent.append({"to": to, "subject": subject, "html": html_body})


class FakeWhatsApp:
    def __init__(self):
        self.sent = []
        self.error = None

    def send(self, to, body):
        if self.error is not None:
            raise self.error
        self.sent.append((to, body))
        return f"SM{len(self.sent):04d}"


class FakePush:
    def __init__(self):
        self.sent = []
        self.error = None

    def send(self, token, message):
        if self.error is not None:
            raise self.error
        self.sent.append((token, message))
        return {"name": f"projects/lab/messages/{len(self.sent)}"}


@pytest.fixture
def test_config(tmp_path):
    class TestConfig(Config):
        DATABASE_PATH = str(tmp_path / "lab_ops.db")
        LOG_LEVEL = "DEBUG"
        EMAIL_API_BASE_URL = ""
        NOTIFICATION_WORKERS = 2

    return TestConfig


@pytest.fixture
def store(tmp_path):
    """Fresh database for each test"""
    store = Store(str(tmp_path / "store.db"))
    store.init_schema()
    yield store
    store.close()


@pytest.fixture
def email_client():
    return RecordingEmailClient()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def whatsapp():
    return FakeWhatsApp()


@pytest.fixture
def push():
    return FakePush()


@pytest.fixture
def app(test_config, mailer, email_client, whatsapp, push):
    return create_app(test_config, mailer=mailer, email_client=email_client, whatsapp=whatsapp, push=push)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def seeded(client):
    """Directory and products for the Haematology department"""
    client.put("/api/departments/Haematology", json={"head": "Dr Moyo"})
    client.put("/api/users/u-head", json={"name": "Dr Moyo", "email": "moyo@lab.test", "role": "Department Head"})
    client.put("/api/users/u-fin", json={"name": "Tariro Chikwanha", "email": "finance@lab.test", "role": "Finance Manager"})
    client.put("/api/users/u-clerk", json={"name": "Farai Ncube", "email": "stores@lab.test", "role": "Accounts Clerk"})

    gloves = client.post("/api/products", json={
        "id": "p-gloves", "code": "GLV-001", "name": "Nitrile Gloves", "category": "PPE", "quantity": 10,
    })
    tubes = client.post("/api/products", json={
        "id": "p-tubes", "code": "EDTA-004", "name": "EDTA Tubes", "category": "Consumables", "quantity": 100,
    })
    assert gloves.status_code == 201
    assert tubes.status_code == 201
    return client
