from .auth import User, SessionToken
from .vehicles import Vehicle
from .documents import DocumentSequence
from .inventory import InventoryItem, InventoryTransaction
from .jobs import JobCard, JobItem, JobStatusHistory, JobMechanicAssignment
from .payments import Payment
from .notifications import NotificationOutbox

__all__ = [
    'User', 'SessionToken',
    'Vehicle',
    'DocumentSequence',
    'InventoryItem', 'InventoryTransaction',
    'JobCard', 'JobItem', 'JobStatusHistory', 'JobMechanicAssignment',
    'Payment',
    'NotificationOutbox',
]
