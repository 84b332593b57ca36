from .tenancy import Organization
from .auth import User, SessionToken
from .security import SecurityEvent
from .transactions import Transaction
from .remittances import Remittance, RemittancePendingItem
from .locks import ProcessLock

__all__ = [
    'Organization',
    'User', 'SessionToken', 'SecurityEvent',
    'Transaction',
    'Remittance', 'RemittancePendingItem',
    'ProcessLock',
]
