"""
Shared utilities and models for the voting session engine.

This package contains common code used across all services:
- Data models (Event, Item, VoterCredential, Ballot, enums)
- Credential code helpers
- The engine's exception hierarchy
"""

from .models import (
    Event,
    Item,
    VoterCredential,
    Ballot,
    ChangeNotice,
    TallyEntry,
    EventDefinition,
    VoteMode,
    EventStatus,
    ChangeKind,
    ANONYMOUS_VOTER,
    MIN_CREDENTIAL_BATCH,
    MAX_CREDENTIAL_BATCH,
    generate_code,
    normalize_code,
    ledger_key,
    new_id,
    rank_items,
    utcnow,
)

__all__ = [
    'Event',
    'Item',
    'VoterCredential',
    'Ballot',
    'ChangeNotice',
    'TallyEntry',
    'EventDefinition',
    'VoteMode',
    'EventStatus',
    'ChangeKind',
    'ANONYMOUS_VOTER',
    'MIN_CREDENTIAL_BATCH',
    'MAX_CREDENTIAL_BATCH',
    'generate_code',
    'normalize_code',
    'ledger_key',
    'new_id',
    'rank_items',
    'utcnow',
]
