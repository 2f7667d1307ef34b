import enum

class Role(str, enum.Enum):
    admin = "admin"
    manager = "manager"
    purchaser = "purchaser"
    warehouse = "warehouse"
    employee = "employee"
    system = "system"

class MovementType(str, enum.Enum):
    receipt = "RECEIPT"
    adjustment = "ADJUSTMENT"

class POStatus(str, enum.Enum):
    draft = "draft"
    pending_approval = "pending_approval"
    approved = "approved"
    sent_to_supplier = "sent_to_supplier"
    partially_received = "partially_received"
    fully_received = "fully_received"
    cancelled = "cancelled"
    closed = "closed"

class ReceiptCondition(str, enum.Enum):
    good = "good"
    damaged = "damaged"
    expired = "expired"

class AuditAction(str, enum.Enum):
    created = "created"
    lines_updated = "lines_updated"
    submitted = "submitted"
    approval_recorded = "approval_recorded"
    approved = "approved"
    rejected = "rejected"
    sent_to_supplier = "sent_to_supplier"
    received = "received"
    closed = "closed"
    cancelled = "cancelled"
    policy_swapped = "policy_swapped"

class EntityType(str, enum.Enum):
    purchase_order = "purchase_order"
    approval_policy = "approval_policy"
