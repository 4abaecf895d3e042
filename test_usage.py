from datetime import datetime, timedelta, timezone

import pytest

from conftest import HEAD
from errors import NotFound, ValidationFailed
from models import (
    AlertSeverity,
    AlertType,
    MaterialMappingCreate,
    MaterialMappingUpdate,
    MaterialRequirement,
    MaterialUsageCreate,
    UsageAlertCreate,
)
from store import ProductRepository
from usage import UsageTracker, wastage_severity

NOW = datetime(2024, 5, 15, 10, 0, tzinfo=timezone.utc)  # a Wednesday


@pytest.fixture
def tracker(store):
    products = ProductRepository(store)
    with store.transaction():
        products.insert("p-tubes", "EDTA-004", "EDTA Tubes", "Consumables", 0.5)
        products.insert("p-reagent", "HB-REA", "Haemoglobin Reagent", "Reagents", 2.0)
    return UsageTracker(store, products, clock=lambda: NOW)


def fbc_mapping(**overrides):
    fields = {
        "testId": "FBC",
        "testName": "Full Blood Count",
        "testCategory": "Haematology",
        "materials": [
            MaterialRequirement(productId="p-tubes", expectedQuantity=1, unit="tube"),
            MaterialRequirement(productId="p-reagent", expectedQuantity=2, unit="ml", unitPrice=3.0),
        ],
    }
    fields.update(overrides)
    return MaterialMappingCreate(**fields)


def used(product_id, actual, sample="S1", at=None, **extra):
    return MaterialUsageCreate(
        sampleId=sample, testId=extra.pop("testId", "FBC"), productId=product_id,
        actualQuantity=actual, usedBy="Rudo Dube", usedAt=at, **extra,
    )


# ---- mappings

def test_mapping_fills_product_details(tracker):
    mapping = tracker.add_mapping(fbc_mapping(), created_by="Dr Moyo")

    tubes, reagent = mapping.materials
    assert tubes.productName == "EDTA Tubes"
    assert tubes.productCode == "EDTA-004"
    assert tubes.category == "Consumables"
    assert tubes.unitPrice == 0.5
    assert reagent.unitPrice == 3.0
    assert mapping.createdBy == "Dr Moyo"
    assert tracker.mapping_for_test("FBC").id == mapping.id


def test_one_active_mapping_per_test(tracker):
    tracker.add_mapping(fbc_mapping())

    with pytest.raises(ValidationFailed) as exc:
        tracker.add_mapping(fbc_mapping())
    assert "already has an active material mapping" in exc.value.message

    inactive = tracker.add_mapping(fbc_mapping(isActive=False))
    with pytest.raises(ValidationFailed):
        tracker.update_mapping(inactive.id, MaterialMappingUpdate(isActive=True))


def test_mapping_names_unknown_products(tracker):
    materials = [
        MaterialRequirement(productId="p-tubes", expectedQuantity=1),
        MaterialRequirement(productId="p-ghost", productName="Ghost Reagent", expectedQuantity=1),
    ]
    with pytest.raises(ValidationFailed) as exc:
        tracker.add_mapping(fbc_mapping(materials=materials))

    assert "Ghost Reagent" in exc.value.message
    assert tracker.list_mappings() == []


def test_update_mapping(tracker):
    mapping = tracker.add_mapping(fbc_mapping())

    with pytest.raises(ValidationFailed):
        tracker.update_mapping(mapping.id, MaterialMappingUpdate(materials=[]))

    updated = tracker.update_mapping(mapping.id, MaterialMappingUpdate(
        testName="FBC with differential",
        materials=[MaterialRequirement(productId="p-tubes", expectedQuantity=2)],
    ))
    assert updated.testName == "FBC with differential"
    assert [item.expectedQuantity for item in updated.materials] == [2]
    assert tracker.get_mapping(mapping.id).testName == "FBC with differential"


def test_delete_mapping(tracker):
    mapping = tracker.add_mapping(fbc_mapping())
    tracker.delete_mapping(mapping.id)

    with pytest.raises(NotFound):
        tracker.mapping_for_test("FBC")
    with pytest.raises(NotFound):
        tracker.delete_mapping(mapping.id)


def test_list_mappings_is_active_only_by_name(tracker):
    tracker.add_mapping(fbc_mapping(testId="UE", testName="urea and electrolytes"))
    tracker.add_mapping(fbc_mapping())
    tracker.add_mapping(fbc_mapping(testId="ESR", testName="ESR", isActive=False))

    assert [m.testName for m in tracker.list_mappings()] == ["Full Blood Count", "urea and electrolytes"]


# ---- usage records

def test_usage_defaults_from_mapping(tracker):
    tracker.add_mapping(fbc_mapping())

    usage, alert = tracker.record_usage(used("p-tubes", 1))

    assert usage.expectedQuantity == 1
    assert usage.unit == "tube"
    assert usage.testName == "Full Blood Count"
    assert usage.testCategory == "Haematology"
    assert usage.wastage == 0
    assert usage.totalCost == pytest.approx(0.5)
    assert alert is None


def test_mapping_price_overrides_product_price(tracker):
    tracker.add_mapping(fbc_mapping())
    usage, _ = tracker.record_usage(used("p-reagent", 2))
    assert usage.unitPrice == 3.0
    assert usage.totalCost == pytest.approx(6.0)


def test_high_wastage_raises_alert(tracker):
    tracker.add_mapping(fbc_mapping())

    usage, alert = tracker.record_usage(used("p-tubes", 3, wastageReason="Clotted sample"))

    assert usage.wastage == 2
    assert alert.type == AlertType.HIGH_WASTAGE
    assert alert.severity == AlertSeverity.CRITICAL
    assert alert.threshold == 100
    assert alert.actualValue == 200.0
    assert alert.title == "High wastage: EDTA Tubes"
    assert "3 tube" in alert.message
    assert [a.id for a in tracker.list_alerts(unread_only=True)] == [alert.id]


@pytest.mark.parametrize("percentage, severity", [
    (0, None),
    (9.9, None),
    (10, AlertSeverity.LOW),
    (30, AlertSeverity.MEDIUM),
    (50, AlertSeverity.HIGH),
    (150, AlertSeverity.CRITICAL),
])
def test_wastage_severity(percentage, severity):
    thresholds = {"low": 10, "medium": 25, "high": 50, "critical": 100}
    assert wastage_severity(percentage, thresholds) == severity


def test_usage_without_mapping_needs_expected_quantity(tracker):
    with pytest.raises(ValidationFailed) as exc:
        tracker.record_usage(used("p-tubes", 1, testId="ESR"))
    assert "expectedQuantity" in exc.value.message

    usage, _ = tracker.record_usage(used("p-tubes", 1, testId="ESR", expectedQuantity=1))
    assert usage.testName == "ESR"
    assert usage.unitPrice == 0.5


def test_usage_for_unknown_product(tracker):
    with pytest.raises(ValidationFailed):
        tracker.record_usage(used("p-ghost", 1, expectedQuantity=1))


def test_usage_does_not_move_stock(tracker):
    tracker.add_mapping(fbc_mapping())
    tracker.record_usage(used("p-tubes", 4))
    assert tracker.products.get("p-tubes").quantity == 0


def test_list_usage_filters_and_pages(tracker):
    tracker.add_mapping(fbc_mapping())
    for hours, sample in [(1, "S1"), (2, "S2"), (3, "S3")]:
        tracker.record_usage(used("p-tubes", 1, sample=sample, at=NOW - timedelta(hours=hours)))
    tracker.record_usage(used("p-reagent", 2, sample="S1", at=NOW - timedelta(hours=1)))

    page = tracker.list_usage(product_id="p-tubes", limit=2)
    assert [u.sampleId for u in page.usage] == ["S1", "S2"]
    assert page.hasMore

    rest = tracker.list_usage(product_id="p-tubes", limit=2, offset=2)
    assert [u.sampleId for u in rest.usage] == ["S3"]
    assert not rest.hasMore

    since = tracker.list_usage(start=NOW - timedelta(hours=1, minutes=30))
    assert {u.productId for u in since.usage} == {"p-tubes", "p-reagent"}
    assert tracker.list_usage(technician="Someone Else").usage == []


# ---- analysis

def test_analysis(tracker):
    tracker.add_mapping(fbc_mapping())
    day_one = datetime(2024, 5, 14, 9, 0, tzinfo=timezone.utc)
    day_two = datetime(2024, 5, 15, 8, 0, tzinfo=timezone.utc)
    tracker.record_usage(used("p-tubes", 2, sample="S1", at=day_one))
    tracker.record_usage(used("p-reagent", 2, sample="S1", at=day_one))
    tracker.record_usage(used("p-tubes", 1, sample="S2", at=day_two))

    result = tracker.analysis(datetime(2024, 5, 14, tzinfo=timezone.utc), NOW)

    assert result.totalTests == 2
    assert result.totalMaterialsUsed == 3
    assert result.totalCost == pytest.approx(7.5)
    assert result.averageWastage == pytest.approx(100 / 3)

    tubes = result.topWastageProducts[0]
    assert tubes.productId == "p-tubes"
    assert tubes.wastage == 1
    assert tubes.wastagePercentage == pytest.approx(50)
    assert tubes.wastageCost == pytest.approx(0.5)
    assert tubes.testCount == 2

    (fbc,) = result.testEfficiency
    assert fbc.totalTests == 2
    assert fbc.averageWastage == pytest.approx(25)
    assert fbc.efficiencyScore == pytest.approx(75)

    costs = result.costAnalysis
    assert costs.totalExpectedCost == pytest.approx(7.0)
    assert costs.costVariance == pytest.approx(0.5)
    assert costs.costVariancePercentage == pytest.approx(0.5 / 7 * 100)
    assert [c.category for c in costs.byCategory] == ["Haematology"]

    assert [(t.date, t.testsPerformed, t.materialsUsed) for t in result.trends] == [
        ("2024-05-14", 1, 2),
        ("2024-05-15", 1, 1),
    ]


def test_analysis_range_must_be_ordered(tracker):
    with pytest.raises(ValidationFailed):
        tracker.analysis(NOW, NOW - timedelta(days=1))


def test_empty_analysis_is_zeroed(tracker):
    result = tracker.analysis(NOW - timedelta(days=1), NOW)
    assert result.totalTests == 0
    assert result.averageWastage == 0
    assert result.costAnalysis.costVariancePercentage == 0
    assert result.trends == []


def test_metrics_compare_with_previous_periods(tracker):
    tracker.add_mapping(fbc_mapping())
    tracker.record_usage(used("p-tubes", 2, sample="S1", at=datetime(2024, 5, 15, 8, tzinfo=timezone.utc)))
    tracker.record_usage(used("p-tubes", 1, sample="S2", at=datetime(2024, 5, 8, 8, tzinfo=timezone.utc)))
    tracker.record_usage(used("p-reagent", 2, sample="S3", at=datetime(2024, 4, 20, 8, tzinfo=timezone.utc)))

    metrics = tracker.metrics()

    assert metrics.today.materialsUsed == 1
    assert metrics.thisWeek.totalCost == pytest.approx(1.0)
    assert metrics.thisWeek.trend == "up"
    assert metrics.thisMonth.totalCost == pytest.approx(1.5)
    assert metrics.thisMonth.trend == "down"
    assert [p.productId for p in metrics.topWastageProducts] == ["p-tubes"]


# ---- alerts

def test_alert_read_and_resolve(tracker):
    alert = tracker.create_alert(UsageAlertCreate(
        type=AlertType.COST_OVERRUN, severity=AlertSeverity.MEDIUM,
        title="Reagent spend", message="Reagent spend is over budget",
    ))

    assert tracker.mark_alert_read(alert.id).isRead
    assert tracker.list_alerts(unread_only=True) == []

    with pytest.raises(ValidationFailed):
        tracker.resolve_alert(alert.id, "  ")

    resolved = tracker.resolve_alert(alert.id, "Dr Moyo")
    assert resolved.isResolved
    assert resolved.resolvedBy == "Dr Moyo"
    assert resolved.resolvedAt == NOW

    with pytest.raises(ValidationFailed):
        tracker.resolve_alert(alert.id, "Dr Moyo")
    with pytest.raises(NotFound):
        tracker.mark_alert_read("missing")


# ---- API

def test_usage_api(seeded):
    client = seeded
    mapping = client.post("/api/usage/mappings", headers=HEAD, json={
        "testId": "FBC",
        "testName": "Full Blood Count",
        "testCategory": "Haematology",
        "materials": [{"productId": "p-tubes", "expectedQuantity": 1, "unit": "tube"}],
    })
    assert mapping.status_code == 201
    assert mapping.json()["createdBy"] == "Dr Moyo"
    mapping_id = mapping.json()["id"]

    assert client.get("/api/usage/mappings/test/FBC").json()["id"] == mapping_id

    recorded = client.post("/api/usage/records", json={
        "sampleId": "S1", "testId": "FBC", "productId": "p-tubes", "actualQuantity": 3, "usedBy": "Rudo Dube",
    })
    assert recorded.status_code == 201
    alert = recorded.json()["alert"]
    assert alert["severity"] == "critical"

    page = client.get("/api/usage/records", params={"testId": "FBC"}).json()
    assert len(page["usage"]) == 1
    assert page["hasMore"] is False

    analysis = client.get("/api/usage/analysis", params={
        "startDate": "2000-01-01T00:00:00Z", "endDate": "2100-01-01T00:00:00Z",
    })
    assert analysis.status_code == 200
    assert analysis.json()["totalMaterialsUsed"] == 1
    assert client.get("/api/usage/metrics").status_code == 200

    assert len(client.get("/api/usage/alerts", params={"unreadOnly": "true"}).json()) == 1
    unnamed = client.post(f"/api/usage/alerts/{alert['id']}/resolve")
    assert unnamed.status_code == 400
    resolved = client.post(f"/api/usage/alerts/{alert['id']}/resolve", headers=HEAD)
    assert resolved.json()["isResolved"] is True

    assert client.delete(f"/api/usage/mappings/{mapping_id}").status_code == 204
    missing = client.get("/api/usage/mappings/test/FBC")
    assert missing.status_code == 404
    assert missing.json()["detail"]["error_code"] == "NOT_FOUND"


def test_usage_api_rejects_mapping_without_materials(seeded):
    response = seeded.post("/api/usage/mappings", json={
        "testId": "FBC", "testName": "Full Blood Count", "materials": [],
    })
    assert response.status_code == 400
