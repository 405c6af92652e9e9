from enum import Enum
from enum import IntEnum


class CacheCategory(Enum):
    """Analytics category; one cache slot and one in-flight request each"""

    proposal = 'proposal'
    token = 'token'
    timelock = 'timelock'
    delegation = 'delegation'
    current_stats = 'currentStats'


class FetchState(Enum):
    """State of the latest request for a category in `FetchOrchestrator`"""

    idle = 'idle'
    fetching = 'fetching'
    succeeded = 'succeeded'
    failed = 'failed'


class EventKind(Enum):
    """Token events used to discover accounts"""

    delegate_changed = 'DelegateChanged'
    transfer = 'Transfer'


class ProposalState(IntEnum):
    """Governance proposal state as returned by `getProposalState`"""

    active = 0
    canceled = 1
    defeated = 2
    succeeded = 3
    queued = 4
    executed = 5
    expired = 6


class ThreatLevel(IntEnum):
    """Timelock threat levels; each has its own execution delay"""

    low = 0
    medium = 1
    high = 2
