"""Matching engines — budget, incentives, weights, votes, vetoes, settlement.

Each engine is a pure state machine over a LedgerStore. Collaborator calls
and audit events are the service layer's job.
"""

from matchbook.matching.budget import BudgetLedger
from matchbook.matching.conversion import NonBaseConversion
from matchbook.matching.distribution import DistributionEngine
from matchbook.matching.incentives import IncentiveLedger
from matchbook.matching.rollover import RolloverEngine
from matchbook.matching.veto import VetoEngine
from matchbook.matching.voting import VotingEngine
from matchbook.matching.weights import VoteWeightEngine

__all__ = [
    "BudgetLedger",
    "DistributionEngine",
    "IncentiveLedger",
    "NonBaseConversion",
    "RolloverEngine",
    "VetoEngine",
    "VoteWeightEngine",
    "VotingEngine",
]
