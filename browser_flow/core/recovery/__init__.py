"""Error recovery module"""

from .service import ErrorRecovery, RecoveryStrategy, RecoveryContext, RecoveryOptions

__all__ = ['ErrorRecovery', 'RecoveryStrategy', 'RecoveryContext', 'RecoveryOptions']
