"""Trade proposal sub-protocol."""

from .manager import ProposalManager
from .schemas import ProposalDecision, ProposalResponse, ProposalResult

__all__ = ["ProposalManager", "ProposalDecision", "ProposalResponse", "ProposalResult"]
