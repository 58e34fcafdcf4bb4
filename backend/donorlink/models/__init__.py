from donorlink.models.kv_record import KvRecord
from donorlink.models.donor import Donor, BloodGroup, VerificationStatus
from donorlink.models.recipient import Recipient, UrgencyLevel, RecipientStatus
from donorlink.models.hospital import Hospital
from donorlink.models.match import Match
from donorlink.models.alert import Alert, AlertState
from donorlink.models.alert_delivery import AlertDelivery, DeliveryChannel, DeliveryState
from donorlink.models.audit_entry import AuditEntry

__all__ = [
    "KvRecord",
    "Donor",
    "BloodGroup",
    "VerificationStatus",
    "Recipient",
    "UrgencyLevel",
    "RecipientStatus",
    "Hospital",
    "Match",
    "Alert",
    "AlertState",
    "AlertDelivery",
    "DeliveryChannel",
    "DeliveryState",
    "AuditEntry",
]
