"""
Stock ledger: the only code that changes Product.quantity.

Quantities may go negative. A decrement larger than the stock on hand is
still applied in full and the shortfall is reported back as `shortage`
(a backorder), never refused.
"""

import logging
import uuid
from typing import Dict, Iterable, List, Optional, Tuple

from errors import InsufficientStock, NotFound, ValidationFailed
from models import (
    IssueRecord,
    LevelUpdateResult,
    LevelUpdateRow,
    MovementReason,
    StockChange,
    StockMovement,
    utcnow,
)
from store import ProductRepository, Store, require_id

logger = logging.getLogger(__name__)


def compute_shortage(current: int, delta: int) -> int:
    """shortage = max(0, -delta - current) for a decrement, 0 otherwise"""
    if delta >= 0:
        return 0
    return max(0, -delta - current)


class BatchResult:
    def __init__(self, changes: List[StockChange], shortages: List[InsufficientStock]):
        self.changes = changes
        self.shortages = shortages


class StockLedger:
    def __init__(self, store: Store, products: Optional[ProductRepository] = None):
        self.store = store
        self.products = products or ProductRepository(store)

    def _apply(self, conn, product_id: str, delta: int, reason: MovementReason, reference: Optional[str]) -> StockChange:
        # caller holds the transaction
        reason = MovementReason(reason)
        row = conn.execute(
            "SELECT quantity FROM products WHERE id = ?", (product_id,)
        ).fetchone()
        if row is None:
            raise NotFound(f"Product {product_id} not found")

        current = row["quantity"]
        new_quantity = current + delta
        shortage = compute_shortage(current, delta)
        timestamp = utcnow().isoformat()

        conn.execute(
            "UPDATE products SET quantity = ?, last_updated = ? WHERE id = ?",
            (new_quantity, timestamp, product_id),
        )
        conn.execute(
            """
            INSERT INTO stock_movements (id, product_id, delta, previous_quantity, new_quantity, shortage, reason, reference, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (str(uuid.uuid4()), product_id, delta, current, new_quantity, shortage,
             reason.value, reference, timestamp),
        )

        if shortage:
            logger.warning(f"Product {product_id} short by {shortage} after {reason.value} (now {new_quantity})")

        return StockChange(
            productId=product_id,
            delta=delta,
            previousQuantity=current,
            newQuantity=new_quantity,
            shortage=shortage,
        )

    def apply_delta(
        self,
        product_id: str,
        delta: int,
        reason: MovementReason = MovementReason.ADJUSTMENT,
        reference: Optional[str] = None,
    ) -> StockChange:
        """
        Apply a signed delta to one product in a single transaction.

        Negative for issuance, positive for returns and receipts. Never
        blocks on insufficient stock.
        """
        require_id(product_id, "Product ID")
        with self.store.transaction() as conn:
            return self._apply(conn, product_id, int(delta), reason, reference)

    def apply_batch(
        self,
        lines: Iterable[Tuple[str, int]],
        reason: MovementReason = MovementReason.ISSUE,
        reference: Optional[str] = None,
        names: Optional[Dict[str, Tuple[str, str]]] = None,
    ) -> BatchResult:
        """
        Apply (product_id, delta) pairs atomically.

        Rules:
        1. Every product must exist, otherwise ValidationFailed before
           anything moves
        2. All deltas apply in one transaction, or none do
        3. Shortages are collected, not raised

        `names` maps product ids to (name, unit) for shortage messages.
        """
        lines = [(product_id, int(delta)) for product_id, delta in lines]
        names = names or {}

        with self.store.transaction() as conn:
            missing = []
            for product_id, _ in lines:
                if self.products.find(product_id) is None:
                    label = names.get(product_id, (product_id, ""))[0] or product_id
                    missing.append(f"Product {label} not found in the system")
            if missing:
                raise ValidationFailed("Validation failed:\n" + "\n".join(missing))

            changes, shortages = [], []
            for product_id, delta in lines:
                change = self._apply(conn, product_id, delta, reason, reference)
                changes.append(change)
                if change.shortage:
                    product = self.products.get(product_id)
                    name, unit = names.get(product_id, (product.name, ""))
                    shortages.append(InsufficientStock(
                        product_id=product_id,
                        name=name or product.name,
                        unit=unit,
                        requested=-delta,
                        available=change.previousQuantity,
                    ))

        return BatchResult(changes, shortages)

    def shortage_report(
        self,
        lines: Iterable[Tuple[str, int]],
        names: Optional[Dict[str, Tuple[str, str]]] = None,
        include_covered: bool = False,
    ) -> List[InsufficientStock]:
        """
        What apply_batch would report for these decrements, without moving stock.

        With include_covered every line is reported, those with enough stock
        carrying a shortage of 0.
        """
        names = names or {}
        report = []
        for product_id, quantity in lines:
            product = self.products.find(product_id)
            if product is None:
                label = names.get(product_id, (product_id, ""))[0] or product_id
                raise ValidationFailed(f"Product {label} not found in the system")
            if include_covered or compute_shortage(product.quantity, -quantity):
                name, unit = names.get(product_id, (product.name, ""))
                report.append(InsufficientStock(
                    product_id=product_id,
                    name=name or product.name,
                    unit=unit,
                    requested=quantity,
                    available=product.quantity,
                ))
        return report

    def set_levels(self, rows: Iterable[LevelUpdateRow]) -> List[LevelUpdateResult]:
        """
        Bulk "set quantity to N" upload keyed by product code.

        Each row becomes a delta computed inside its own transaction, so a
        concurrent issuance between read and write is never overwritten.
        """
        results = []
        for row in rows:
            code = (row.productCode or "").strip()
            description = (row.description or "").strip()
            if not code or not description:
                results.append(LevelUpdateResult(
                    success=False, productCode=code or "N/A", productName=description or "N/A",
                    oldQuantity=0, newQuantity=row.quantity, error="Invalid data format",
                ))
                continue

            with self.store.transaction() as conn:
                product = self.products.find_by_code(code)
                if product is None:
                    results.append(LevelUpdateResult(
                        success=False, productCode=code, productName=description,
                        oldQuantity=0, newQuantity=row.quantity, error="Product not found",
                    ))
                    continue
                if product.name.lower() != description.lower():
                    results.append(LevelUpdateResult(
                        success=False, productCode=code, productName=description,
                        oldQuantity=product.quantity, newQuantity=row.quantity, error="Description mismatch",
                    ))
                    continue

                change = self._apply(
                    conn, product.id, row.quantity - product.quantity,
                    MovementReason.BULK_UPDATE, "bulk-upload",
                )

            results.append(LevelUpdateResult(
                success=True, productCode=code, productName=description,
                oldQuantity=change.previousQuantity, newQuantity=change.newQuantity,
            ))

        updated = sum(1 for result in results if result.success)
        logger.info(f"Bulk stock update: {updated}/{len(results)} rows applied")
        return results

    def direct_issue(self, product_id: str, quantity: int, department: str, issued_to: str, signature: str):
        """Issue stock outside a requisition and keep an issueRecords entry for it"""
        require_id(product_id, "Product ID")
        if quantity <= 0:
            raise ValidationFailed("Quantity must be greater than zero")
        if not signature:
            raise ValidationFailed("Signature is required")

        record = IssueRecord(
            id=str(uuid.uuid4()),
            productId=product_id,
            quantity=quantity,
            department=department,
            issuedTo=issued_to,
            signature=signature,
            timestamp=utcnow(),
        )
        with self.store.transaction() as conn:
            change = self._apply(conn, product_id, -quantity, MovementReason.DIRECT_ISSUE, record.id)
            conn.execute(
                """
                INSERT INTO issue_records (id, product_id, quantity, department, issued_to, signature, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (record.id, product_id, quantity, department, issued_to, signature, record.timestamp.isoformat()),
            )

        logger.info(f"Direct issue of {quantity} x {product_id} to {issued_to} ({department})")
        return record, change

    def receive_opening_balance(self, product_id: str, quantity: int) -> Optional[StockChange]:
        if quantity <= 0:
            return None
        return self.apply_delta(product_id, quantity, MovementReason.RECEIPT, "opening-balance")

    def movements(self, product_id: str) -> List[StockMovement]:
        self.products.get(product_id)
        rows = self.store.connection().execute(
            "SELECT * FROM stock_movements WHERE product_id = ? ORDER BY created_at DESC, rowid DESC",
            (product_id,),
        ).fetchall()
        return [
            StockMovement(
                id=row["id"],
                productId=row["product_id"],
                delta=row["delta"],
                previousQuantity=row["previous_quantity"],
                newQuantity=row["new_quantity"],
                shortage=row["shortage"],
                reason=row["reason"],
                reference=row["reference"],
                createdAt=row["created_at"],
            )
            for row in rows
        ]
