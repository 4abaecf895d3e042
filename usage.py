"""
Material usage tracking.

A test-to-material mapping lists what one lab test is expected to consume.
Each usage record captures what a sample's test actually consumed of one
product, with wastage = actual - expected. A record whose wastage crosses
one of the configured thresholds raises a high_wastage alert in the same
transaction.

Usage records are for analysis only; stock quantities move through the
ledger, never from here.
"""

import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from errors import NotFound, ValidationFailed
from models import (
    AlertSeverity,
    AlertType,
    CategoryCost,
    CostAnalysis,
    LabTestCost,
    LabTestEfficiency,
    MaterialEfficiency,
    MaterialMapping,
    MaterialMappingCreate,
    MaterialMappingUpdate,
    MaterialRequirement,
    MaterialUsage,
    MaterialUsageCreate,
    PeriodMetrics,
    UsageAlert,
    UsageAlertCreate,
    UsageAnalysis,
    UsageMetrics,
    UsagePage,
    UsagePeriod,
    UsageTrend,
    WastageAnalysis,
    utcnow,
)
from store import ProductRepository, Store, require_id

logger = logging.getLogger(__name__)

PAGE_SIZE = 50
TOP_WASTAGE_PRODUCTS = 10
DEFAULT_THRESHOLDS = {"low": 10, "medium": 25, "high": 50, "critical": 100}
SEVERITY_ORDER = (AlertSeverity.CRITICAL, AlertSeverity.HIGH, AlertSeverity.MEDIUM, AlertSeverity.LOW)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _stamp(moment: datetime) -> str:
    # fixed precision so stored stamps order correctly as text
    return _as_utc(moment).isoformat(timespec="microseconds")


def _percent(part: float, whole: float) -> float:
    return part / whole * 100 if whole else 0.0


def _trend(current: float, previous: float) -> str:
    if current > previous:
        return "up"
    if current < previous:
        return "down"
    return "stable"


def wastage_severity(percentage: float, thresholds: Dict[str, float]) -> Optional[AlertSeverity]:
    """Highest severity whose threshold the wastage percentage reaches"""
    for severity in SEVERITY_ORDER:
        limit = thresholds.get(severity.value)
        if limit is not None and percentage >= limit:
            return severity
    return None


def analyse(records: Iterable[MaterialUsage], start: datetime, end: datetime) -> UsageAnalysis:
    """
    Aggregate usage records over a period.

    Rules:
    1. Tests performed counts distinct samples
    2. Average wastage is the mean of per-record wastage percentages;
       records with no expected quantity are left out of it
    3. Top wastage products are ranked by wastage percentage, highest first
    4. Tests are ranked by efficiency score (100 - wastage %), least efficient first
    """
    records = list(records)

    rated = [usage.wastage_percentage for usage in records if usage.wastage_percentage is not None]
    average_wastage = sum(rated) / len(rated) if rated else 0.0

    by_product: Dict[str, WastageAnalysis] = {}
    by_test: Dict[str, List[MaterialUsage]] = {}
    by_category: Dict[str, CategoryCost] = {}
    test_costs: Dict[str, LabTestCost] = {}
    by_day: Dict[str, dict] = {}

    for usage in records:
        expected_cost = usage.expectedQuantity * usage.unitPrice
        wastage_cost = usage.wastage * usage.unitPrice

        product = by_product.get(usage.productId)
        if product is None:
            product = by_product[usage.productId] = WastageAnalysis(
                productId=usage.productId,
                productName=usage.productName,
                productCode=usage.productCode,
                category=usage.productCategory or usage.testCategory,
            )
        product.expectedQuantity += usage.expectedQuantity
        product.actualQuantity += usage.actualQuantity
        product.wastage += usage.wastage
        product.totalCost += usage.totalCost
        product.wastageCost += wastage_cost
        product.testCount += 1

        by_test.setdefault(usage.testId, []).append(usage)

        category = by_category.get(usage.testCategory)
        if category is None:
            category = by_category[usage.testCategory] = CategoryCost(category=usage.testCategory)
        category.expectedCost += expected_cost
        category.actualCost += usage.totalCost
        category.wastageCost += wastage_cost
        category.testCount += 1

        test_cost = test_costs.get(usage.testId)
        if test_cost is None:
            test_cost = test_costs[usage.testId] = LabTestCost(testId=usage.testId, testName=usage.testName)
        test_cost.expectedCost += expected_cost
        test_cost.actualCost += usage.totalCost
        test_cost.wastageCost += wastage_cost
        test_cost.testCount += 1

        day = by_day.setdefault(_as_utc(usage.usedAt).date().isoformat(), {
            "samples": set(), "materials": 0, "cost": 0.0, "wastage": 0.0, "expected": 0.0,
        })
        day["samples"].add(usage.sampleId)
        day["materials"] += 1
        day["cost"] += usage.totalCost
        day["wastage"] += usage.wastage
        day["expected"] += usage.expectedQuantity

    for product in by_product.values():
        product.wastagePercentage = _percent(product.wastage, product.expectedQuantity)
    top_wastage = sorted(by_product.values(), key=lambda p: p.wastagePercentage, reverse=True)

    efficiency = []
    for test_id, usage_list in by_test.items():
        materials: Dict[str, MaterialEfficiency] = {}
        for usage in usage_list:
            material = materials.get(usage.productId)
            if material is None:
                material = materials[usage.productId] = MaterialEfficiency(
                    productId=usage.productId, productName=usage.productName
                )
            material.expectedQuantity += usage.expectedQuantity
            material.actualQuantity += usage.actualQuantity
            material.wastage += usage.wastage
        for material in materials.values():
            material.wastagePercentage = _percent(material.wastage, material.expectedQuantity)

        wastage = _percent(sum(u.wastage for u in usage_list), sum(u.expectedQuantity for u in usage_list))
        efficiency.append(LabTestEfficiency(
            testId=test_id,
            testName=usage_list[0].testName,
            testCategory=usage_list[0].testCategory,
            totalTests=len({u.sampleId for u in usage_list}),
            averageWastage=wastage,
            efficiencyScore=max(0.0, 100 - wastage),
            materials=list(materials.values()),
        ))
    efficiency.sort(key=lambda t: t.efficiencyScore)

    total_expected_cost = sum(u.expectedQuantity * u.unitPrice for u in records)
    total_actual_cost = sum(u.totalCost for u in records)
    variance = total_actual_cost - total_expected_cost

    trends = [
        UsageTrend(
            date=key,
            testsPerformed=len(day["samples"]),
            materialsUsed=day["materials"],
            totalCost=day["cost"],
            averageWastage=_percent(day["wastage"], day["expected"]),
        )
        for key, day in sorted(by_day.items())
    ]

    return UsageAnalysis(
        period=UsagePeriod(startDate=start, endDate=end),
        totalTests=len({u.sampleId for u in records}),
        totalMaterialsUsed=len(records),
        totalCost=total_actual_cost,
        averageWastage=average_wastage,
        topWastageProducts=top_wastage[:TOP_WASTAGE_PRODUCTS],
        testEfficiency=efficiency,
        costAnalysis=CostAnalysis(
            totalExpectedCost=total_expected_cost,
            totalActualCost=total_actual_cost,
            totalWastageCost=sum(u.wastage * u.unitPrice for u in records),
            costVariance=variance,
            costVariancePercentage=_percent(variance, total_expected_cost),
            byCategory=list(by_category.values()),
            byTest=list(test_costs.values()),
        ),
        trends=trends,
    )


class UsageTracker:
    def __init__(
        self,
        store: Store,
        products: Optional[ProductRepository] = None,
        thresholds: Optional[Dict[str, float]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.products = products or ProductRepository(store)
        self.thresholds = thresholds or DEFAULT_THRESHOLDS
        self.clock = clock

    # ---- test-to-material mappings

    def _fill_requirements(self, materials: List[MaterialRequirement]) -> List[MaterialRequirement]:
        """Copy name, code, category and price from the product records where not given"""
        seen = set()
        filled, missing = [], []
        for item in materials:
            if item.productId in seen:
                raise ValidationFailed(f"Product {item.productId} appears more than once")
            seen.add(item.productId)

            product = self.products.find(item.productId)
            if product is None:
                missing.append(f"Product {item.productName or item.productId} not found in the system")
                continue
            filled.append(item.model_copy(update={
                "productName": item.productName or product.name,
                "productCode": item.productCode or product.code,
                "category": item.category or product.category,
                "unitPrice": product.unitPrice if item.unitPrice is None else item.unitPrice,
            }))
        if missing:
            raise ValidationFailed("Validation failed:\n" + "\n".join(missing))
        return filled

    def _check_single_active(self, conn, mapping: MaterialMapping):
        if not mapping.isActive:
            return
        row = conn.execute(
            "SELECT id FROM test_material_mappings WHERE test_id = ? AND is_active = 1 AND id != ?",
            (mapping.testId, mapping.id),
        ).fetchone()
        if row is not None:
            raise ValidationFailed(f"Test {mapping.testId} already has an active material mapping")

    def add_mapping(self, payload: MaterialMappingCreate, created_by: str = "") -> MaterialMapping:
        now = self.clock()
        mapping = MaterialMapping(
            id=str(uuid.uuid4()),
            testId=payload.testId,
            testName=payload.testName,
            testCategory=payload.testCategory,
            materials=self._fill_requirements(payload.materials),
            createdBy=created_by,
            isActive=payload.isActive,
            createdAt=now,
            updatedAt=now,
        )
        with self.store.transaction() as conn:
            self._check_single_active(conn, mapping)
            conn.execute(
                """
                INSERT INTO test_material_mappings (id, test_id, test_name, is_active, created_at, updated_at, data)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    mapping.id, mapping.testId, mapping.testName, int(mapping.isActive),
                    _stamp(mapping.createdAt), _stamp(mapping.updatedAt),
                    json.dumps(mapping.model_dump(mode="json")),
                ),
            )
        logger.info(f"Material mapping for test {mapping.testId} created with {len(mapping.materials)} material(s)")
        return mapping

    def get_mapping(self, mapping_id: str) -> MaterialMapping:
        require_id(mapping_id, "Mapping ID")
        row = self.store.connection().execute(
            "SELECT data FROM test_material_mappings WHERE id = ?", (mapping_id,)
        ).fetchone()
        if row is None:
            raise NotFound(f"Material mapping {mapping_id} not found")
        return MaterialMapping.model_validate(json.loads(row["data"]))

    def update_mapping(self, mapping_id: str, payload: MaterialMappingUpdate) -> MaterialMapping:
        require_id(mapping_id, "Mapping ID")
        if payload.materials is not None and not payload.materials:
            raise ValidationFailed("At least one material is required")
        materials = self._fill_requirements(payload.materials) if payload.materials is not None else None

        with self.store.transaction() as conn:
            mapping = self.get_mapping(mapping_id)
            if payload.testName is not None:
                mapping.testName = payload.testName
            if payload.testCategory is not None:
                mapping.testCategory = payload.testCategory
            if materials is not None:
                mapping.materials = materials
            if payload.isActive is not None:
                mapping.isActive = payload.isActive
            self._check_single_active(conn, mapping)
            mapping.updatedAt = self.clock()
            conn.execute(
                """
                UPDATE test_material_mappings
                SET test_name = ?, is_active = ?, updated_at = ?, data = ?
                WHERE id = ?
                """,
                (
                    mapping.testName, int(mapping.isActive), _stamp(mapping.updatedAt),
                    json.dumps(mapping.model_dump(mode="json")), mapping.id,
                ),
            )
        logger.info(f"Material mapping {mapping.id} for test {mapping.testId} updated")
        return mapping

    def delete_mapping(self, mapping_id: str):
        require_id(mapping_id, "Mapping ID")
        with self.store.transaction() as conn:
            cursor = conn.execute("DELETE FROM test_material_mappings WHERE id = ?", (mapping_id,))
            if cursor.rowcount == 0:
                raise NotFound(f"Material mapping {mapping_id} not found")
        logger.info(f"Material mapping {mapping_id} deleted")

    def list_mappings(self) -> List[MaterialMapping]:
        """Active mappings by test name"""
        rows = self.store.connection().execute(
            "SELECT data FROM test_material_mappings WHERE is_active = 1"
        ).fetchall()
        mappings = [MaterialMapping.model_validate(json.loads(row["data"])) for row in rows]
        return sorted(mappings, key=lambda mapping: mapping.testName.lower())

    def find_mapping(self, test_id: str) -> Optional[MaterialMapping]:
        row = self.store.connection().execute(
            "SELECT data FROM test_material_mappings WHERE test_id = ? AND is_active = 1", (test_id,)
        ).fetchone()
        if row is None:
            return None
        return MaterialMapping.model_validate(json.loads(row["data"]))

    def mapping_for_test(self, test_id: str) -> MaterialMapping:
        require_id(test_id, "Test ID")
        mapping = self.find_mapping(test_id)
        if mapping is None:
            raise NotFound(f"No active material mapping for test {test_id}")
        return mapping

    # ---- usage records

    def record_usage(self, payload: MaterialUsageCreate) -> Tuple[MaterialUsage, Optional[UsageAlert]]:
        """Store one usage record; returns the alert it raised, if any"""
        with self.store.transaction() as conn:
            product = self.products.find(payload.productId)
            if product is None:
                raise ValidationFailed(f"Product {payload.productId} not found in the system")

            mapping = self.find_mapping(payload.testId)
            requirement = mapping.requirement_for(payload.productId) if mapping else None

            expected = payload.expectedQuantity
            if expected is None:
                if requirement is None:
                    raise ValidationFailed(
                        f"No expected quantity of {product.name} for test {payload.testId}: "
                        "add it to the test's material mapping or send expectedQuantity"
                    )
                expected = requirement.expectedQuantity

            unit_price = product.unitPrice
            if requirement is not None and requirement.unitPrice is not None:
                unit_price = requirement.unitPrice

            usage = MaterialUsage(
                id=str(uuid.uuid4()),
                sampleId=payload.sampleId,
                accessionNumber=payload.accessionNumber,
                testId=payload.testId,
                testName=payload.testName or (mapping.testName if mapping else payload.testId),
                testCategory=payload.testCategory or (mapping.testCategory if mapping else ""),
                productId=product.id,
                productName=product.name,
                productCode=product.code,
                productCategory=product.category,
                expectedQuantity=expected,
                actualQuantity=payload.actualQuantity,
                unit=payload.unit or (requirement.unit if requirement else ""),
                unitPrice=unit_price,
                totalCost=payload.actualQuantity * unit_price,
                wastage=payload.actualQuantity - expected,
                wastageReason=payload.wastageReason,
                usedBy=payload.usedBy,
                usedAt=_as_utc(payload.usedAt or self.clock()),
                notes=payload.notes,
            )
            conn.execute(
                """
                INSERT INTO material_usage (id, sample_id, test_id, product_id, used_by, used_at, data)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    usage.id, usage.sampleId, usage.testId, usage.productId, usage.usedBy,
                    _stamp(usage.usedAt), json.dumps(usage.model_dump(mode="json", exclude_none=True)),
                ),
            )
            alert = self._wastage_alert(conn, usage)

        logger.info(
            f"Usage recorded: {usage.actualQuantity:g} of {usage.productCode} for test {usage.testId} "
            f"on sample {usage.sampleId}"
        )
        if alert is not None:
            logger.warning(f"Usage alert ({alert.severity.value}): {alert.message}")
        return usage, alert

    def _wastage_alert(self, conn, usage: MaterialUsage) -> Optional[UsageAlert]:
        percentage = usage.wastage_percentage
        if percentage is None or percentage <= 0:
            return None
        severity = wastage_severity(percentage, self.thresholds)
        if severity is None:
            return None

        def amount(quantity: float) -> str:
            return f"{quantity:g} {usage.unit}".strip()

        alert = UsageAlert(
            id=str(uuid.uuid4()),
            type=AlertType.HIGH_WASTAGE,
            severity=severity,
            title=f"High wastage: {usage.productName}",
            message=(
                f"{usage.testName} on sample {usage.sampleId} used {amount(usage.actualQuantity)} of "
                f"{usage.productName} against {amount(usage.expectedQuantity)} expected "
                f"({percentage:.1f}% wastage)"
            ),
            productId=usage.productId,
            testId=usage.testId,
            threshold=self.thresholds[severity.value],
            actualValue=round(percentage, 2),
            createdAt=self.clock(),
        )
        self._insert_alert(conn, alert)
        return alert

    def _usage_records(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        test_id: Optional[str] = None,
        product_id: Optional[str] = None,
        technician: Optional[str] = None,
        newest_first: bool = True,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[MaterialUsage]:
        clauses, params = [], []
        if start is not None:
            clauses.append("used_at >= ?")
            params.append(_stamp(start))
        if end is not None:
            clauses.append("used_at <= ?")
            params.append(_stamp(end))
        if test_id:
            clauses.append("test_id = ?")
            params.append(test_id)
        if product_id:
            clauses.append("product_id = ?")
            params.append(product_id)
        if technician:
            clauses.append("used_by = ?")
            params.append(technician)

        query = "SELECT data FROM material_usage"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY used_at DESC" if newest_first else " ORDER BY used_at ASC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])

        rows = self.store.connection().execute(query, params).fetchall()
        return [MaterialUsage.model_validate(json.loads(row["data"])) for row in rows]

    def list_usage(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        test_id: Optional[str] = None,
        product_id: Optional[str] = None,
        technician: Optional[str] = None,
        limit: int = PAGE_SIZE,
        offset: int = 0,
    ) -> UsagePage:
        """One page of usage records, newest first"""
        records = self._usage_records(
            start, end, test_id, product_id, technician, limit=limit + 1, offset=offset
        )
        return UsagePage(usage=records[:limit], hasMore=len(records) > limit)

    def analysis(
        self,
        start: datetime,
        end: datetime,
        test_id: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> UsageAnalysis:
        if _as_utc(end) < _as_utc(start):
            raise ValidationFailed("End date must not be before start date")
        records = self._usage_records(start, end, test_id, product_id, newest_first=False)
        return analyse(records, start, end)

    def metrics(self, now: Optional[datetime] = None) -> UsageMetrics:
        """
        Dashboard figures for today, this week (from Sunday) and this month.

        Week and month trends compare total cost with the previous week and
        month.
        """
        now = _as_utc(now or self.clock())
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_start = today - timedelta(days=(today.weekday() + 1) % 7)
        month_start = today.replace(day=1)
        last_week_start = week_start - timedelta(days=7)
        last_month_start = (month_start - timedelta(days=1)).replace(day=1)
        just_before = timedelta(microseconds=1)

        today_usage = self.analysis(today, now)
        week = self.analysis(week_start, now)
        month = self.analysis(month_start, now)
        last_week = self.analysis(last_week_start, week_start - just_before)
        last_month = self.analysis(last_month_start, month_start - just_before)

        def period(analysis: UsageAnalysis, trend: Optional[str] = None) -> PeriodMetrics:
            return PeriodMetrics(
                testsPerformed=analysis.totalTests,
                materialsUsed=analysis.totalMaterialsUsed,
                totalCost=analysis.totalCost,
                averageWastage=analysis.averageWastage,
                trend=trend,
            )

        return UsageMetrics(
            today=period(today_usage),
            thisWeek=period(week, _trend(week.totalCost, last_week.totalCost)),
            thisMonth=period(month, _trend(month.totalCost, last_month.totalCost)),
            topWastageProducts=week.topWastageProducts[:5],
            leastEfficientTests=week.testEfficiency[:5],
        )

    # ---- alerts

    def _insert_alert(self, conn, alert: UsageAlert):
        conn.execute(
            """
            INSERT INTO usage_alerts (id, type, severity, is_read, is_resolved, created_at, data)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                alert.id, alert.type.value, alert.severity.value, int(alert.isRead), int(alert.isResolved),
                _stamp(alert.createdAt), json.dumps(alert.model_dump(mode="json", exclude_none=True)),
            ),
        )

    def _save_alert(self, conn, alert: UsageAlert):
        conn.execute(
            "UPDATE usage_alerts SET is_read = ?, is_resolved = ?, data = ? WHERE id = ?",
            (
                int(alert.isRead), int(alert.isResolved),
                json.dumps(alert.model_dump(mode="json", exclude_none=True)), alert.id,
            ),
        )

    def create_alert(self, payload: UsageAlertCreate) -> UsageAlert:
        alert = UsageAlert(id=str(uuid.uuid4()), createdAt=self.clock(), **payload.model_dump())
        with self.store.transaction() as conn:
            self._insert_alert(conn, alert)
        logger.info(f"Usage alert created: {alert.title}")
        return alert

    def get_alert(self, alert_id: str) -> UsageAlert:
        require_id(alert_id, "Alert ID")
        row = self.store.connection().execute(
            "SELECT data FROM usage_alerts WHERE id = ?", (alert_id,)
        ).fetchone()
        if row is None:
            raise NotFound(f"Usage alert {alert_id} not found")
        return UsageAlert.model_validate(json.loads(row["data"]))

    def list_alerts(self, unread_only: bool = False) -> List[UsageAlert]:
        query = "SELECT data FROM usage_alerts"
        if unread_only:
            query += " WHERE is_read = 0"
        query += " ORDER BY created_at DESC"
        rows = self.store.connection().execute(query).fetchall()
        return [UsageAlert.model_validate(json.loads(row["data"])) for row in rows]

    def mark_alert_read(self, alert_id: str) -> UsageAlert:
        with self.store.transaction() as conn:
            alert = self.get_alert(alert_id)
            alert.isRead = True
            self._save_alert(conn, alert)
        return alert

    def resolve_alert(self, alert_id: str, resolved_by: str) -> UsageAlert:
        resolved_by = (resolved_by or "").strip()
        if not resolved_by:
            raise ValidationFailed("Resolver name is required")

        with self.store.transaction() as conn:
            alert = self.get_alert(alert_id)
            if alert.isResolved:
                raise ValidationFailed(f"Usage alert {alert_id} is already resolved")
            alert.isResolved = True
            alert.isRead = True
            alert.resolvedBy = resolved_by
            alert.resolvedAt = self.clock()
            self._save_alert(conn, alert)
        logger.info(f"Usage alert {alert_id} resolved by {resolved_by}")
        return alert
