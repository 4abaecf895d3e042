from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==================== ENUMS ====================

class RequisitionStatus(str, Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    APPROVED = "Approved"
    ISSUED = "Issued"
    DELIVERED = "Delivered"
    COMPLETED = "Completed"
    REJECTED = "Rejected"


class RejectionStage(str, Enum):
    DEPARTMENT_HEAD = "Department Head"
    FINANCE_MANAGER = "Finance Manager"


class ReceiptMethod(str, Enum):
    QR_SCAN = "qr_scan"
    SYSTEM_SCAN = "system_scan"


class MovementReason(str, Enum):
    ISSUE = "ISSUE"
    RECEIPT = "RECEIPT"
    ADJUSTMENT = "ADJUSTMENT"
    DIRECT_ISSUE = "DIRECT_ISSUE"
    BULK_UPDATE = "BULK_UPDATE"


class AlertType(str, Enum):
    HIGH_WASTAGE = "high_wastage"
    UNUSUAL_USAGE = "unusual_usage"
    LOW_STOCK = "low_stock"
    COST_OVERRUN = "cost_overrun"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


FINANCE_APPROVER = "Finance Manager"


# ==================== DOCUMENTS ====================

class LineItem(BaseModel):
    productId: str
    name: str = ""
    unit: str = ""
    requestedQuantity: int = Field(gt=0)
    approvedQuantity: Optional[int] = Field(default=None, ge=0)
    approvalNotes: Optional[str] = None


class IssuedProduct(BaseModel):
    productId: str
    name: str
    unit: str
    requestedQuantity: int
    issuedQuantity: int = Field(ge=0)


class Requisition(BaseModel):
    id: str
    dispatchNumber: str
    requestDate: datetime
    department: str
    requestedBy: str
    requesterEmail: str
    comments: Optional[str] = None
    status: RequisitionStatus
    products: List[LineItem]
    approver1: str = ""
    approver2: str = FINANCE_APPROVER

    confirmedBy: Optional[str] = None
    confirmedAt: Optional[datetime] = None
    approver1Comments: Optional[str] = None

    approvedBy: Optional[str] = None
    approvedAt: Optional[datetime] = None
    approver2Comments: Optional[str] = None

    rejectedBy: Optional[str] = None
    rejectedAt: Optional[datetime] = None
    rejectionReason: Optional[str] = None
    rejectedStage: Optional[RejectionStage] = None

    issuedBy: Optional[str] = None
    issuedAt: Optional[datetime] = None
    issuanceNotes: Optional[str] = None
    issuedProducts: Optional[List[IssuedProduct]] = None
    receivedBy: Optional[str] = None
    receiverSignature: Optional[str] = None

    driverReceivedBy: Optional[str] = None
    driverReceivedAt: Optional[datetime] = None
    driverSignature: Optional[str] = None
    driverHandoverNotes: Optional[str] = None

    finalReceivedBy: Optional[str] = None
    finalReceivedAt: Optional[datetime] = None
    finalSignature: Optional[str] = None
    receiptMethod: Optional[ReceiptMethod] = None
    finalReceiptNotes: Optional[str] = None

    createdAt: datetime
    updatedAt: datetime

    def line_for(self, product_id: str) -> Optional[LineItem]:
        return next((line for line in self.products if line.productId == product_id), None)

    def to_document(self) -> Dict[str, Any]:
        """Serialized form with absent optional members omitted"""
        return self.model_dump(mode="json", exclude_none=True)


class Product(BaseModel):
    id: str
    code: str
    name: str
    category: str = ""
    quantity: int
    unitPrice: float = 0
    createdAt: datetime
    lastUpdated: datetime


class StockChange(BaseModel):
    productId: str
    delta: int
    previousQuantity: int
    newQuantity: int
    shortage: int


class StockMovement(BaseModel):
    id: str
    productId: str
    delta: int
    previousQuantity: int
    newQuantity: int
    shortage: int
    reason: MovementReason
    reference: Optional[str] = None
    createdAt: datetime


class IssueRecord(BaseModel):
    id: str
    productId: str
    quantity: int
    department: str
    issuedTo: str
    signature: str
    timestamp: datetime


class CounterState(BaseModel):
    count: int
    lastResetYear: int


class Department(BaseModel):
    name: str
    head: str


class DirectoryUser(BaseModel):
    id: str
    name: str
    email: str
    role: Optional[str] = None


class Actor(BaseModel):
    """Whoever is performing a transition"""

    name: str
    role: Optional[str] = None


# ==================== REQUEST/RESPONSE MODELS ====================

class LineItemCreate(BaseModel):
    productId: NonEmptyStr
    name: Optional[str] = None
    unit: str = ""
    requestedQuantity: int = Field(gt=0)


class RequisitionCreate(BaseModel):
    department: NonEmptyStr
    requestedBy: str
    requesterEmail: str
    products: List[LineItemCreate]
    requestDate: Optional[datetime] = None
    comments: Optional[str] = None


class RequisitionAmend(BaseModel):
    products: Optional[List[LineItemCreate]] = None
    requestDate: Optional[datetime] = None
    comments: Optional[str] = None


class ApprovedLine(BaseModel):
    productId: NonEmptyStr
    approvedQuantity: int = Field(ge=0)
    approvalNotes: Optional[str] = None


class ConfirmRequest(BaseModel):
    approvedProducts: List[ApprovedLine] = []
    comments: Optional[str] = None


class RejectRequest(BaseModel):
    reason: str = ""
    stage: Optional[RejectionStage] = None


class ApproveRequest(BaseModel):
    comments: Optional[str] = None


class IssueLine(BaseModel):
    productId: NonEmptyStr
    issuedQuantity: int = Field(ge=0)


class IssuePreviewRequest(BaseModel):
    issuedProducts: Optional[List[IssueLine]] = None


class IssueRequest(BaseModel):
    issuedProducts: Optional[List[IssueLine]] = None
    receivedBy: Optional[str] = None
    signature: Optional[str] = None
    isDriver: bool = False
    notes: Optional[str] = None


class ShortageLine(BaseModel):
    productId: str
    name: str
    unit: str
    requested: int
    available: int
    shortage: int


class IssueResponse(BaseModel):
    requisition: Requisition
    shortages: List[ShortageLine]


class HandoverRequest(BaseModel):
    recipientName: str = ""
    signature: str = ""
    notes: Optional[str] = None


class FinalReceiptRequest(BaseModel):
    receiverName: str = ""
    signature: str = ""
    receiptMethod: ReceiptMethod = ReceiptMethod.SYSTEM_SCAN
    notes: Optional[str] = None


class ProductCreate(BaseModel):
    id: Optional[str] = None
    code: NonEmptyStr
    name: NonEmptyStr
    category: str = ""
    unitPrice: float = Field(default=0, ge=0)
    quantity: int = Field(default=0, ge=0)


class StockAdjustRequest(BaseModel):
    productId: NonEmptyStr
    delta: int
    reason: MovementReason = MovementReason.ADJUSTMENT
    reference: Optional[str] = None


class LevelUpdateRow(BaseModel):
    productCode: str
    description: str
    quantity: int


class LevelUpdateResult(BaseModel):
    success: bool
    productCode: str
    productName: str
    oldQuantity: int
    newQuantity: int
    error: Optional[str] = None


class BulkUpdateRequest(BaseModel):
    rows: List[LevelUpdateRow]


class DirectIssueRequest(BaseModel):
    productId: NonEmptyStr
    quantity: int = Field(gt=0)
    department: NonEmptyStr
    issuedTo: NonEmptyStr
    signature: NonEmptyStr


class DirectIssueResponse(BaseModel):
    record: IssueRecord
    change: StockChange


class CounterResetRequest(BaseModel):
    value: int = Field(default=0, ge=0)


class DepartmentUpdate(BaseModel):
    head: NonEmptyStr


class UserUpdate(BaseModel):
    name: NonEmptyStr
    email: NonEmptyStr
    role: Optional[str] = None


# ==================== USAGE TRACKING ====================

class MaterialRequirement(BaseModel):
    """What one lab test is expected to consume of one product"""

    productId: NonEmptyStr
    productName: str = ""
    productCode: str = ""
    category: str = ""
    expectedQuantity: float = Field(gt=0)
    unit: str = ""
    unitPrice: Optional[float] = Field(default=None, ge=0)
    isConsumable: bool = True
    notes: Optional[str] = None


class MaterialMapping(BaseModel):
    id: str
    testId: str
    testName: str
    testCategory: str = ""
    materials: List[MaterialRequirement]
    createdBy: str = ""
    isActive: bool = True
    createdAt: datetime
    updatedAt: datetime

    def requirement_for(self, product_id: str) -> Optional[MaterialRequirement]:
        return next((item for item in self.materials if item.productId == product_id), None)


class MaterialMappingCreate(BaseModel):
    testId: NonEmptyStr
    testName: NonEmptyStr
    testCategory: str = ""
    materials: List[MaterialRequirement] = Field(min_length=1)
    isActive: bool = True


class MaterialMappingUpdate(BaseModel):
    testName: Optional[NonEmptyStr] = None
    testCategory: Optional[str] = None
    materials: Optional[List[MaterialRequirement]] = None
    isActive: Optional[bool] = None


class MaterialUsage(BaseModel):
    id: str
    sampleId: str
    accessionNumber: str = ""
    testId: str
    testName: str
    testCategory: str = ""
    productId: str
    productName: str
    productCode: str
    productCategory: str = ""
    expectedQuantity: float
    actualQuantity: float
    unit: str = ""
    unitPrice: float
    totalCost: float
    wastage: float
    wastageReason: Optional[str] = None
    usedBy: str
    usedAt: datetime
    notes: Optional[str] = None

    @property
    def wastage_percentage(self) -> Optional[float]:
        if not self.expectedQuantity:
            return None
        return self.wastage / self.expectedQuantity * 100


class MaterialUsageCreate(BaseModel):
    """
    One product consumed by one test on one sample.

    expectedQuantity, unit and test details default to the test's active
    material mapping.
    """

    sampleId: NonEmptyStr
    accessionNumber: str = ""
    testId: NonEmptyStr
    testName: Optional[str] = None
    testCategory: Optional[str] = None
    productId: NonEmptyStr
    unit: Optional[str] = None
    actualQuantity: float = Field(ge=0)
    expectedQuantity: Optional[float] = Field(default=None, ge=0)
    usedBy: NonEmptyStr
    usedAt: Optional[datetime] = None
    wastageReason: Optional[str] = None
    notes: Optional[str] = None


class UsageAlert(BaseModel):
    id: str
    type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    productId: Optional[str] = None
    testId: Optional[str] = None
    threshold: Optional[float] = None
    actualValue: Optional[float] = None
    createdAt: datetime
    isRead: bool = False
    isResolved: bool = False
    resolvedBy: Optional[str] = None
    resolvedAt: Optional[datetime] = None


class UsageAlertCreate(BaseModel):
    type: AlertType
    severity: AlertSeverity
    title: NonEmptyStr
    message: NonEmptyStr
    productId: Optional[str] = None
    testId: Optional[str] = None
    threshold: Optional[float] = None
    actualValue: Optional[float] = None


class RecordedUsage(BaseModel):
    usage: MaterialUsage
    alert: Optional[UsageAlert] = None


class UsagePage(BaseModel):
    usage: List[MaterialUsage]
    hasMore: bool


class WastageAnalysis(BaseModel):
    productId: str
    productName: str
    productCode: str
    category: str = ""
    expectedQuantity: float = 0
    actualQuantity: float = 0
    wastage: float = 0
    wastagePercentage: float = 0
    totalCost: float = 0
    wastageCost: float = 0
    testCount: int = 0


class MaterialEfficiency(BaseModel):
    productId: str
    productName: str
    expectedQuantity: float = 0
    actualQuantity: float = 0
    wastage: float = 0
    wastagePercentage: float = 0


class LabTestEfficiency(BaseModel):
    testId: str
    testName: str
    testCategory: str = ""
    totalTests: int = 0
    averageWastage: float = 0
    efficiencyScore: float = 0
    materials: List[MaterialEfficiency] = []


class CategoryCost(BaseModel):
    category: str
    expectedCost: float = 0
    actualCost: float = 0
    wastageCost: float = 0
    testCount: int = 0


class LabTestCost(BaseModel):
    testId: str
    testName: str
    expectedCost: float = 0
    actualCost: float = 0
    wastageCost: float = 0
    testCount: int = 0


class CostAnalysis(BaseModel):
    totalExpectedCost: float
    totalActualCost: float
    totalWastageCost: float
    costVariance: float
    costVariancePercentage: float
    byCategory: List[CategoryCost]
    byTest: List[LabTestCost]


class UsageTrend(BaseModel):
    date: str
    testsPerformed: int
    materialsUsed: int
    totalCost: float
    averageWastage: float


class UsagePeriod(BaseModel):
    startDate: datetime
    endDate: datetime


class UsageAnalysis(BaseModel):
    period: UsagePeriod
    totalTests: int
    totalMaterialsUsed: int
    totalCost: float
    averageWastage: float
    topWastageProducts: List[WastageAnalysis]
    testEfficiency: List[LabTestEfficiency]
    costAnalysis: CostAnalysis
    trends: List[UsageTrend]


class PeriodMetrics(BaseModel):
    testsPerformed: int
    materialsUsed: int
    totalCost: float
    averageWastage: float
    trend: Optional[str] = None


class UsageMetrics(BaseModel):
    today: PeriodMetrics
    thisWeek: PeriodMetrics
    thisMonth: PeriodMetrics
    topWastageProducts: List[WastageAnalysis]
    leastEfficientTests: List[LabTestEfficiency]


# ==================== NOTIFICATION PAYLOADS ====================

class ApprovalEmail(BaseModel):
    requisitionId: NonEmptyStr
    approverEmail: NonEmptyStr
    requesterName: NonEmptyStr
    department: NonEmptyStr


class RejectionEmail(BaseModel):
    requisitionId: NonEmptyStr
    requesterEmail: NonEmptyStr
    rejectorName: NonEmptyStr
    reason: NonEmptyStr
    stage: NonEmptyStr


class EmailIssuedItem(BaseModel):
    name: str
    issuedQuantity: int
    unit: str = ""


class IssuanceEmail(BaseModel):
    requisitionId: NonEmptyStr
    requesterEmail: NonEmptyStr
    requesterName: NonEmptyStr
    issuedProducts: List[EmailIssuedItem]
    notes: Optional[str] = None


class DriverHandoverEmail(BaseModel):
    requisitionId: NonEmptyStr
    requesterEmail: NonEmptyStr
    requesterName: NonEmptyStr
    driverName: NonEmptyStr
    dispatchNumber: NonEmptyStr


class ReceiptConfirmationEmail(BaseModel):
    requisitionId: NonEmptyStr
    requesterEmail: NonEmptyStr
    requesterName: NonEmptyStr
    dispatchNumber: NonEmptyStr


class TaskAssignmentEmail(BaseModel):
    taskId: NonEmptyStr
    assignedToEmail: NonEmptyStr
    assignedToName: NonEmptyStr
    assignedByName: NonEmptyStr
    taskTitle: NonEmptyStr
    dueDate: NonEmptyStr
    taskDescription: Optional[str] = None
    priority: Optional[str] = None


class TaskCompletionEmail(BaseModel):
    taskId: NonEmptyStr
    assignerEmail: NonEmptyStr
    assignerName: NonEmptyStr
    completedByName: NonEmptyStr
    taskTitle: NonEmptyStr
    completedAt: Optional[str] = None


class WhatsAppRequest(BaseModel):
    phoneNumber: NonEmptyStr
    message: NonEmptyStr


class PushMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: str
    body: str


class PushRequest(BaseModel):
    token: NonEmptyStr
    message: PushMessage
