"""
sqlite-backed document store.

Each thread gets its own connection. All writes that must not interleave
run inside transaction(), which opens BEGIN IMMEDIATE; concurrent
writers serialize on the database lock.
transaction() is reentrant: an inner block joins the outer transaction.
"""

import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import List, Optional

from errors import InvalidArgument, NotFound, ValidationFailed
from models import (
    AlertSeverity,
    AlertType,
    Department,
    DirectoryUser,
    Product,
    Requisition,
    RequisitionStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

_STATUS_VALUES = ", ".join(f"'{status.value}'" for status in RequisitionStatus)
_ALERT_TYPES = ", ".join(f"'{alert_type.value}'" for alert_type in AlertType)
_ALERT_SEVERITIES = ", ".join(f"'{severity.value}'" for severity in AlertSeverity)

SCHEMA = [
    f"""
    CREATE TABLE IF NOT EXISTS requisitions (
        id TEXT PRIMARY KEY,
        dispatch_number TEXT UNIQUE NOT NULL,
        status TEXT NOT NULL CHECK(status IN ({_STATUS_VALUES})),
        department TEXT NOT NULL,
        requested_by TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id TEXT PRIMARY KEY,
        code TEXT UNIQUE NOT NULL,
        name TEXT NOT NULL,
        category TEXT NOT NULL DEFAULT '',
        quantity INTEGER NOT NULL DEFAULT 0,
        unit_price REAL NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        last_updated TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stock_movements (
        id TEXT PRIMARY KEY,
        product_id TEXT NOT NULL,
        delta INTEGER NOT NULL,
        previous_quantity INTEGER NOT NULL,
        new_quantity INTEGER NOT NULL,
        shortage INTEGER NOT NULL DEFAULT 0,
        reason TEXT NOT NULL CHECK(reason IN ('ISSUE', 'RECEIPT', 'ADJUSTMENT', 'DIRECT_ISSUE', 'BULK_UPDATE')),
        reference TEXT,
        created_at TEXT NOT NULL,
        FOREIGN KEY (product_id) REFERENCES products(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS issue_records (
        id TEXT PRIMARY KEY,
        product_id TEXT NOT NULL,
        quantity INTEGER NOT NULL,
        department TEXT NOT NULL,
        issued_to TEXT NOT NULL,
        signature TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        FOREIGN KEY (product_id) REFERENCES products(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS counters (
        id TEXT PRIMARY KEY,
        count INTEGER NOT NULL,
        last_reset_year INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS departments (
        name TEXT PRIMARY KEY,
        head TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL,
        role TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS test_material_mappings (
        id TEXT PRIMARY KEY,
        test_id TEXT NOT NULL,
        test_name TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS material_usage (
        id TEXT PRIMARY KEY,
        sample_id TEXT NOT NULL,
        test_id TEXT NOT NULL,
        product_id TEXT NOT NULL,
        used_by TEXT NOT NULL,
        used_at TEXT NOT NULL,
        data TEXT NOT NULL,
        FOREIGN KEY (product_id) REFERENCES products(id)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS usage_alerts (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL CHECK(type IN ({_ALERT_TYPES})),
        severity TEXT NOT NULL CHECK(severity IN ({_ALERT_SEVERITIES})),
        is_read INTEGER NOT NULL DEFAULT 0,
        is_resolved INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_requisitions_status ON requisitions(status, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_mappings_test ON test_material_mappings(test_id, is_active)",
    "CREATE INDEX IF NOT EXISTS idx_usage_used_at ON material_usage(used_at)",
    "CREATE INDEX IF NOT EXISTS idx_usage_test ON material_usage(test_id, used_at)",
    "CREATE INDEX IF NOT EXISTS idx_usage_product ON material_usage(product_id, used_at)",
    "CREATE INDEX IF NOT EXISTS idx_alerts_read ON usage_alerts(is_read, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_requisitions_requester ON requisitions(requested_by, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_movements_product ON stock_movements(product_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_users_name ON users(name)",
    "CREATE INDEX IF NOT EXISTS idx_users_role ON users(role)",
]


class Store:
    def __init__(self, path: str, timeout: float = 30.0):
        self.path = path
        self.timeout = timeout
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._lock = threading.Lock()

    def connection(self) -> sqlite3.Connection:
        """Get this thread's connection, opening it on first use"""
        conn = getattr(self._local, "connection", None)
        if conn is None:
            conn = sqlite3.connect(
                self.path,
                timeout=self.timeout,
                check_same_thread=False,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            self._local.connection = conn
            self._local.depth = 0
            with self._lock:
                self._connections.append(conn)
        return conn

    def init_schema(self):
        """Create tables and indexes if they don't exist"""
        directory = os.path.dirname(os.path.abspath(self.path))
        if self.path != ":memory:":
            os.makedirs(directory, exist_ok=True)
        conn = self.connection()
        conn.execute("PRAGMA journal_mode = WAL")
        for statement in SCHEMA:
            conn.execute(statement)
        logger.info(f"Document store ready at {self.path}")

    @contextmanager
    def transaction(self):
        conn = self.connection()
        if self._local.depth:
            self._local.depth += 1
            try:
                yield conn
            finally:
                self._local.depth -= 1
            return

        conn.execute("BEGIN IMMEDIATE")
        self._local.depth = 1
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            try:
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
        finally:
            self._local.depth = 0

    def close(self):
        with self._lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()


# Helper functions
def require_id(value: Optional[str], label: str = "Requisition ID"):
    if value is None or not str(value).strip():
        raise InvalidArgument(f"{label} is required")


class RequisitionRepository:
    """requisitions collection; documents are stored as JSON beside their query columns"""

    def __init__(self, store: Store):
        self.store = store

    def insert(self, requisition: Requisition) -> Requisition:
        conn = self.store.connection()
        conn.execute(
            """
            INSERT INTO requisitions (id, dispatch_number, status, department, requested_by, created_at, updated_at, data)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                requisition.id,
                requisition.dispatchNumber,
                requisition.status.value,
                requisition.department,
                requisition.requestedBy,
                requisition.createdAt.isoformat(),
                requisition.updatedAt.isoformat(),
                json.dumps(requisition.to_document()),
            ),
        )
        return requisition

    def get(self, requisition_id: str) -> Requisition:
        require_id(requisition_id)
        row = self.store.connection().execute(
            "SELECT data FROM requisitions WHERE id = ?", (requisition_id,)
        ).fetchone()
        if not row:
            raise NotFound(f"Requisition {requisition_id} not found")
        return Requisition.model_validate(json.loads(row["data"]))

    def save(self, requisition: Requisition) -> Requisition:
        """Write back a requisition; the dispatch number column is never rewritten"""
        cursor = self.store.connection().execute(
            """
            UPDATE requisitions
            SET status = ?, department = ?, requested_by = ?, updated_at = ?, data = ?
            WHERE id = ?
            """,
            (
                requisition.status.value,
                requisition.department,
                requisition.requestedBy,
                requisition.updatedAt.isoformat(),
                json.dumps(requisition.to_document()),
                requisition.id,
            ),
        )
        if cursor.rowcount == 0:
            raise NotFound(f"Requisition {requisition.id} not found")
        return requisition

    def list(self, status: Optional[RequisitionStatus] = None, requested_by: Optional[str] = None) -> List[Requisition]:
        query = "SELECT data FROM requisitions"
        clauses, params = [], []
        if status:
            clauses.append("status = ?")
            params.append(RequisitionStatus(status).value)
        if requested_by:
            clauses.append("requested_by = ?")
            params.append(requested_by)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"
        rows = self.store.connection().execute(query, params).fetchall()
        return [Requisition.model_validate(json.loads(row["data"])) for row in rows]


def _product_from_row(row) -> Product:
    return Product(
        id=row["id"],
        code=row["code"],
        name=row["name"],
        category=row["category"],
        quantity=row["quantity"],
        unitPrice=row["unit_price"],
        createdAt=row["created_at"],
        lastUpdated=row["last_updated"],
    )


class ProductRepository:
    """products collection. Quantity is written only by the stock ledger."""

    def __init__(self, store: Store):
        self.store = store

    def insert(self, product_id: str, code: str, name: str, category: str = "", unit_price: float = 0) -> Product:
        timestamp = utcnow().isoformat()
        try:
            self.store.connection().execute(
                """
                INSERT INTO products (id, code, name, category, quantity, unit_price, created_at, last_updated)
                VALUES (?, ?, ?, ?, 0, ?, ?, ?)
                """,
                (product_id, code, name, category, unit_price, timestamp, timestamp),
            )
        except sqlite3.IntegrityError:
            raise ValidationFailed(f"Product {product_id} or code {code} already exists")
        return self.get(product_id)

    def find(self, product_id: str) -> Optional[Product]:
        row = self.store.connection().execute(
            "SELECT * FROM products WHERE id = ?", (product_id,)
        ).fetchone()
        return _product_from_row(row) if row else None

    def get(self, product_id: str) -> Product:
        product = self.find(product_id)
        if product is None:
            raise NotFound(f"Product {product_id} not found")
        return product

    def find_by_code(self, code: str) -> Optional[Product]:
        row = self.store.connection().execute(
            "SELECT * FROM products WHERE code = ?", (code,)
        ).fetchone()
        return _product_from_row(row) if row else None

    def list(self) -> List[Product]:
        rows = self.store.connection().execute(
            "SELECT * FROM products ORDER BY created_at DESC"
        ).fetchall()
        return [_product_from_row(row) for row in rows]


class Directory:
    """departments and users, read by the approval rule lookup"""

    def __init__(self, store: Store):
        self.store = store

    def upsert_department(self, name: str, head: str) -> Department:
        with self.store.transaction() as conn:
            conn.execute(
                """
                INSERT INTO departments (name, head) VALUES (?, ?)
                ON CONFLICT(name) DO UPDATE SET head = excluded.head
                """,
                (name, head),
            )
        return Department(name=name, head=head)

    def department_head(self, department: str) -> str:
        row = self.store.connection().execute(
            "SELECT head FROM departments WHERE name = ?", (department,)
        ).fetchone()
        return row["head"] if row else ""

    def upsert_user(self, user_id: str, name: str, email: str, role: Optional[str] = None) -> DirectoryUser:
        with self.store.transaction() as conn:
            conn.execute(
                """
                INSERT INTO users (id, name, email, role) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET name = excluded.name, email = excluded.email, role = excluded.role
                """,
                (user_id, name, email, role),
            )
        return DirectoryUser(id=user_id, name=name, email=email, role=role)

    def email_for(self, name_or_role: str) -> str:
        """Look up a user by name first, then by role; empty string if neither matches"""
        if not name_or_role:
            return ""
        conn = self.store.connection()
        row = conn.execute(
            "SELECT email FROM users WHERE name = ? ORDER BY id LIMIT 1", (name_or_role,)
        ).fetchone()
        if row is None:
            row = conn.execute(
                "SELECT email FROM users WHERE role = ? ORDER BY id LIMIT 1", (name_or_role,)
            ).fetchone()
        return row["email"] if row else ""
