"""Voting session engine components."""

from .coordinator import OperationalAlerts, SubmissionCoordinator
from .credentials import CredentialStore
from .ledger import AuditLedger, HttpLedger, LedgerRecorder, NullLedger
from .notifier import ChangeNotifier, QueueSubscription
from .service import VotingEngine
from .session import SessionStateMachine, accepts_submissions
from .tally import Results, TallyLedger
from .validator import BallotValidator, validate_ballot

__all__ = [
    'OperationalAlerts',
    'SubmissionCoordinator',
    'CredentialStore',
    'AuditLedger',
    'HttpLedger',
    'LedgerRecorder',
    'NullLedger',
    'ChangeNotifier',
    'QueueSubscription',
    'VotingEngine',
    'SessionStateMachine',
    'accepts_submissions',
    'Results',
    'TallyLedger',
    'BallotValidator',
    'validate_ballot',
]
